"""
Logging setup: root logger plus a dedicated billing logger with a rotating file.
"""
import logging
import os
from logging.handlers import RotatingFileHandler

from creditscribe.config.settings import Settings

BILLING_LOGGER_NAME = "billing"

_billing_configured = False


def configure_logging(settings: Settings) -> None:
    """Configure root logging and the billing logger once per process"""
    global _billing_configured

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
        force=True
    )

    if _billing_configured:
        return

    billing_logger = logging.getLogger(BILLING_LOGGER_NAME)
    billing_logger.setLevel(getattr(logging, settings.billing_log_level.upper(), logging.DEBUG))
    billing_logger.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - BILLING - %(levelname)s - %(message)s')
    )
    billing_logger.addHandler(console_handler)

    if settings.enable_billing_logs:
        log_dir = os.path.dirname(settings.billing_log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.billing_log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setFormatter(
            logging.Formatter(
                '%(asctime)s | %(levelname)-8s | %(funcName)-25s | %(message)s'
            )
        )
        billing_logger.addHandler(file_handler)

    _billing_configured = True
