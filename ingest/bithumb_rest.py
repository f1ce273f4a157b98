import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config
from ingest.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)


class GatewayAPIError(Exception):
    def __init__(self, status: int, code: Optional[str], message: Optional[str], body: str):
        self.status = status
        self.code = code
        self.message = message
        self.body = body
        text = f"Bithumb API error (status={status}, code={code}, message={message})"
        super().__init__(text)


class GatewayAuthError(GatewayAPIError):
    """401/403 from a private endpoint; a configuration problem, never retried."""


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def build_jwt(access_key: str, secret_key: str, query: Optional[str] = None) -> str:
    """HS256 token carrying access key, nonce and timestamp (plus the SHA-512 query hash)."""
    header = {"alg": "HS256", "typ": "JWT"}
    payload: Dict[str, Any] = {
        "access_key": access_key,
        "nonce": str(uuid.uuid4()),
        "timestamp": int(time.time() * 1000),
    }
    if query:
        payload["query_hash"] = hashlib.sha512(query.encode("utf-8")).hexdigest()
        payload["query_hash_alg"] = "SHA512"
    signing_input = ".".join(
        _b64url(json.dumps(part, separators=(",", ":")).encode("utf-8"))
        for part in (header, payload)
    )
    signature = hmac.new(
        secret_key.encode("utf-8"),
        signing_input.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return f"{signing_input}.{_b64url(signature)}"


class BithumbRESTClient:
    def __init__(self, base_url: Optional[str] = None, limiter: Optional[RateLimiter] = None):
        exchange = config.exchange
        self.base_url = (base_url or exchange.get("rest_base_url", "https://api.bithumb.com")).rstrip("/")
        self.access_key: Optional[str] = exchange.get("access_key") or None
        self.secret_key: Optional[str] = exchange.get("secret_key") or None
        self.timeout_s = float(exchange.get("request_timeout_s", 10))
        self.max_retries = int(config.execution.get("max_retries", 3))
        self.retry_base_s = float(config.execution.get("retry_base_s", 1.0))
        self.limiter = limiter or RateLimiter(exchange.get("rate_limit_per_sec", 10))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_key and self.secret_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = await self._get_session()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        url = f"{self.base_url}{path}"

        for attempt in range(self.max_retries + 1):
            await self.limiter.acquire()
            headers: Dict[str, str] = {"Accept": "application/json"}
            if signed:
                if not self.has_credentials:
                    raise GatewayAuthError(0, None, "API key/secret required for private request", "")
                query = urlencode(body if body is not None else params, doseq=True)
                # Fresh nonce per attempt
                headers["Authorization"] = f"Bearer {build_jwt(self.access_key, self.secret_key, query)}"

            try:
                async with session.request(
                    method.upper(),
                    url,
                    params=params or None,
                    json=body,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                ) as resp:
                    text = await resp.text()
                    status = resp.status
            except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
                if attempt < self.max_retries:
                    delay = self.retry_base_s * (2 ** attempt)
                    logger.warning("%s %s failed (%s), retrying in %.1fs", method, path, exc, delay)
                    await asyncio.sleep(delay)
                    continue
                raise

            payload: Any
            try:
                payload = json.loads(text) if text else None
            except ValueError:
                payload = text

            if status in (401, 403):
                code, message = self._error_fields(payload)
                logger.error("Auth error on %s %s (status=%s): check API keys", method, path, status)
                raise GatewayAuthError(status, code, message, text)

            if status == 429 or status >= 500:
                if attempt < self.max_retries:
                    delay = self.retry_base_s * (2 ** attempt)
                    logger.warning("%s %s returned %s, backing off %.1fs", method, path, status, delay)
                    await asyncio.sleep(delay)
                    continue

            if status >= 400:
                code, message = self._error_fields(payload)
                raise GatewayAPIError(status, code, message, text)

            return payload

        raise GatewayAPIError(0, None, "retries exhausted", "")

    @staticmethod
    def _error_fields(payload: Any):
        if isinstance(payload, dict):
            err = payload.get("error")
            if isinstance(err, dict):
                return err.get("name"), err.get("message")
            return payload.get("status"), payload.get("message")
        return None, None

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
        body: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Any:
        return await self._request("POST", path, signed=signed, body=body)

    async def delete(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
