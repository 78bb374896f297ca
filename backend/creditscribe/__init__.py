"""Metered speech-to-text backend"""
