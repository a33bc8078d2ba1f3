import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


logger = logging.getLogger(__name__)

# 429 = request weight exceeded, 418 = IP auto-banned after repeated 429s.
RATE_LIMIT_STATUSES = (418, 429)
WEIGHT_HEADER = "X-MBX-USED-WEIGHT-1M"


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str,
                 retry_after: Optional[float] = None):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        self.retry_after = retry_after
        super().__init__(f"Binance API error (status={status}, code={code}, msg={msg})")

    @property
    def retryable(self) -> bool:
        return self.status in RATE_LIMIT_STATUSES or self.status >= 500


class BinanceRESTClient:
    """Spot REST session with HMAC signing and rate-limit aware retries.

    Only idempotent GETs are retried. A POST that timed out may still have
    reached the matching engine, so order placement errors go straight back to
    the caller.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        exchange_cfg = config.exchange
        self.base_url = (base_url or exchange_cfg.get("rest_url") or "https://api.binance.com").rstrip("/")
        self.api_key: Optional[str] = api_key if api_key is not None else exchange_cfg.get("api_key")
        self.api_secret: Optional[str] = api_secret if api_secret is not None else exchange_cfg.get("api_secret")
        self.recv_window = int(exchange_cfg.get("recv_window_ms", 5000))
        self.max_retries = int(max_retries if max_retries is not None else exchange_cfg.get("max_retries", 3))
        self.timeout = aiohttp.ClientTimeout(
            total=float(timeout_s if timeout_s is not None else exchange_cfg.get("request_timeout_s", 15))
        )
        self.used_weight: Optional[int] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    def sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Return ``params`` plus timestamp, recvWindow and an HMAC-SHA256 signature."""
        if not self.has_credentials:
            raise RuntimeError("Binance API key/secret required for signed request")
        signed = dict(params)
        signed.setdefault("timestamp", int(time.time() * 1000))
        signed.setdefault("recvWindow", self.recv_window)
        query = urlencode(signed, doseq=True)
        signed["signature"] = hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return signed

    @staticmethod
    def _decode(text: str, content_type: str) -> Any:
        if "application/json" not in content_type:
            return text
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _send(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        signed: bool,
    ) -> Any:
        session = await self._get_session()
        headers: Dict[str, str] = {}
        if signed:
            # Re-signed per attempt so the timestamp stays inside recvWindow.
            params = self.sign(params)
        if self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        async with session.request(method, f"{self.base_url}{path}", params=params, headers=headers) as resp:
            text = await resp.text()
            weight = resp.headers.get(WEIGHT_HEADER)
            if weight is not None and weight.isdigit():
                self.used_weight = int(weight)
            payload = self._decode(text, resp.headers.get("Content-Type", ""))
            if resp.status < 400:
                return payload

            code = msg = None
            if isinstance(payload, dict):
                code = payload.get("code")
                msg = payload.get("msg")
            retry_after = resp.headers.get("Retry-After")
            raise BinanceAPIError(
                resp.status,
                code,
                msg,
                text,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        method = method.upper()
        params = dict(params or {})
        attempts = self.max_retries + 1 if method == "GET" else 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._send(method, path, params, signed)
            except BinanceAPIError as exc:
                if not exc.retryable or attempt == attempts:
                    raise
                delay = exc.retry_after or min(2 ** attempt, 30)
                logger.warning(
                    "%s %s failed with status %s (attempt %s/%s); retrying in %.0fs",
                    method,
                    path,
                    exc.status,
                    attempt,
                    attempts,
                    delay,
                )
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
                if attempt == attempts:
                    raise
                delay = min(2 ** attempt, 30)
                logger.warning("%s %s transport error: %s; retrying in %.0fs", method, path, exc, delay)
            await asyncio.sleep(delay)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # Signed params travel in the query string.
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
