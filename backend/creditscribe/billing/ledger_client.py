"""
HTTP client for the ledger service.

Every adjustment is a single request; the authoritative balance in the
response is written into the balance cache. Retries are the caller's call.
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

import aiohttp

from creditscribe.billing.balance_cache import BalanceCache
from creditscribe.errors import InsufficientCredits, LedgerError
from creditscribe.logging_config import BILLING_LOGGER_NAME

billing_logger = logging.getLogger(BILLING_LOGGER_NAME)


class LedgerAdjustmentClient:
    """Issues balance reads and adjustments against the ledger REST API"""

    def __init__(
        self,
        base_url: str,
        token: str,
        cache: BalanceCache,
        timeout: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.cache = cache
        self._token = token
        self._timeout = timeout
        self._session = session

    def _headers(self, request_id: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._token}",
            "X-Request-ID": request_id,
        }

    async def _request(
        self,
        method: str,
        path: str,
        request_id: str,
        payload: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None
    ):
        """Send one request and return (status, body text)"""
        url = f"{self.base_url}{path}"
        headers = self._headers(request_id)
        if extra_headers:
            headers.update(extra_headers)

        kwargs: Dict[str, Any] = {
            "headers": headers,
            "timeout": aiohttp.ClientTimeout(total=self._timeout),
        }
        if payload is not None:
            kwargs["json"] = payload

        try:
            if self._session is not None:
                async with self._session.request(method, url, **kwargs) as response:
                    return response.status, await response.text()

            async with aiohttp.ClientSession() as session:
                async with session.request(method, url, **kwargs) as response:
                    return response.status, await response.text()

        except asyncio.TimeoutError:
            billing_logger.error(
                f"[LEDGER] Timeout | "
                f"request_id={request_id} | "
                f"url={url} | "
                f"timeout_s={self._timeout}"
            )
            raise LedgerError("Ledger request timed out")

        except aiohttp.ClientError as e:
            billing_logger.error(
                f"[LEDGER] Connection failed | "
                f"request_id={request_id} | "
                f"url={url} | "
                f"error={str(e)} | "
                f"error_type={type(e).__name__}"
            )
            raise LedgerError(f"Ledger unreachable: {type(e).__name__}") from e

    @staticmethod
    def _parse(body: str, request_id: str, status: int) -> Dict[str, Any]:
        """Decode a JSON object body. Error bodies that are not JSON decode to {}."""
        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError as e:
            billing_logger.error(
                f"[LEDGER] Invalid JSON response | "
                f"request_id={request_id} | "
                f"status={status} | "
                f"response={body[:500]}"
            )
            if status != 200:
                return {}
            raise LedgerError("Invalid ledger response", status=status) from e
        if not isinstance(data, dict):
            if status != 200:
                return {}
            raise LedgerError("Invalid ledger response", status=status)
        return data

    @staticmethod
    def _credits_from(data: Dict[str, Any]) -> int:
        credits = data.get("credits")
        if not isinstance(credits, int) or isinstance(credits, bool):
            raise LedgerError("Ledger response is missing the credit balance")
        return credits

    async def fetch_balance(self) -> int:
        """Read the current balance from GET /me and seed the cache"""
        request_id = f"me_{int(time.time() * 1000)}"
        status, body = await self._request("GET", "/me", request_id)
        data = self._parse(body, request_id, status)

        if status != 200:
            message = data.get("error") or "Balance read failed"
            raise LedgerError(message, status=status)

        credits = self._credits_from(data)
        self.cache.set(credits)

        billing_logger.info(
            f"[LEDGER] Balance loaded | "
            f"request_id={request_id} | "
            f"credits={credits}"
        )
        return credits

    async def adjust(
        self,
        delta: int,
        type: str,
        description: str,
        related_payment_id: Optional[str] = None
    ) -> int:
        """
        Apply a signed delta and return the server-confirmed balance.

        Raises:
            InsufficientCredits: the ledger refused a decrement at zero balance
            LedgerError: any other failure; the cache is left untouched
        """
        request_id = f"adj_{int(time.time() * 1000)}"
        payload: Dict[str, Any] = {
            "amount": delta,
            "type": type,
            "description": description,
        }
        if related_payment_id:
            payload["related_payment_id"] = related_payment_id

        billing_logger.debug(
            f"[LEDGER] Adjust starting | "
            f"request_id={request_id} | "
            f"data={json.dumps(payload)}"
        )

        start_time = time.time()
        status, body = await self._request(
            "POST",
            "/credits/adjust",
            request_id,
            payload=payload,
            extra_headers={"Idempotency-Key": str(uuid.uuid4())}
        )
        latency_ms = (time.time() - start_time) * 1000
        data = self._parse(body, request_id, status)

        billing_logger.info(
            f"[LEDGER] Response received | "
            f"request_id={request_id} | "
            f"status={status} | "
            f"latency_ms={latency_ms:.1f}"
        )

        if status == 409:
            credits = data.get("credits", 0)
            if isinstance(credits, int):
                self.cache.set(credits)
            raise InsufficientCredits(data.get("error", "Insufficient credits"), credits=self.cache.get())

        if status != 200:
            message = data.get("error") or "Ledger adjustment failed"
            billing_logger.error(
                f"[LEDGER] Adjust failed | "
                f"request_id={request_id} | "
                f"status={status} | "
                f"error={message}"
            )
            raise LedgerError(message, status=status)

        credits = self._credits_from(data)
        self.cache.set(credits)
        return credits
