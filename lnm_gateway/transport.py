import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import aiohttp
from yarl import URL

from .errors import InvalidResponseError, TransportError, UpstreamHTTPError
from .logging_setup import logger

# Upstream error text is truncated before it is attached to an exception.
MAX_ERROR_TEXT = 300


@dataclass
class TransportResponse:
    status: int
    payload: Any
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0


def parse_retry_after(headers: Mapping[str, str], now: Optional[float] = None) -> Optional[float]:
    """Seconds to wait according to rate-limit headers, if any.

    ``Retry-After`` is read as a delay in seconds. ``X-RateLimit-Reset`` is read
    as a unix timestamp (seconds or milliseconds).
    """
    value = headers.get("Retry-After")
    if value is not None:
        try:
            return max(0.0, float(value))
        except (TypeError, ValueError):
            return None
    value = headers.get("X-RateLimit-Reset")
    if value is not None:
        try:
            reset = float(value)
        except (TypeError, ValueError):
            return None
        if reset > 1e12:
            reset /= 1000
        now = time.time() if now is None else now
        return max(0.0, reset - now)
    return None


def _error_text(payload: Any, text: str) -> str:
    if isinstance(payload, Mapping):
        for key in ("message", "error", "code"):
            if payload.get(key):
                return str(payload[key])[:MAX_ERROR_TEXT]
    return (text or "").strip()[:MAX_ERROR_TEXT] or "no body"


class HttpTransport:
    """Thin aiohttp wrapper that sends pre-built requests byte for byte.

    The query string and body are sent exactly as given (no re-encoding), since
    request signatures are computed over those exact strings.

    Usage:
        async with HttpTransport(timeout=10) as transport:
            resp = await transport.send("GET", "https://.../v2/user", headers=...)
    """

    def __init__(self, *, timeout: float = 10.0, session: Optional[aiohttp.ClientSession] = None, user_agent: str = "lnm-gateway"):
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        query: str = "",
        body: str = "",
        timeout: Optional[float] = None,
    ) -> TransportResponse:
        """Send one request and return the decoded JSON payload.

        Raises:
            TransportError: connection failure or timeout
            UpstreamHTTPError: non-2xx status
            InvalidResponseError: 2xx status with a body that is not JSON
        """
        session = self._ensure_session()
        full_url = f"{url}?{query}" if query else url
        started = time.monotonic()
        try:
            async with session.request(
                method,
                URL(full_url, encoded=True),
                headers=dict(headers or {}),
                data=body.encode("utf-8") if body else None,
                timeout=aiohttp.ClientTimeout(total=timeout or self.timeout),
            ) as resp:
                raw = await resp.read()
                elapsed_ms = (time.monotonic() - started) * 1000
                ok = 200 <= resp.status < 300
                try:
                    text = raw.decode(resp.charset or "utf-8")
                except (UnicodeDecodeError, LookupError):
                    if ok:
                        raise InvalidResponseError(f"Undecodable response body from {method} {url}")
                    text = raw.decode("utf-8", errors="replace")
                resp_headers = {k: v for k, v in resp.headers.items()}
                payload = None
                if text:
                    try:
                        payload = json.loads(text)
                    except json.JSONDecodeError:
                        if ok:
                            raise InvalidResponseError(f"Non-JSON response from {method} {url}")

                if not ok:
                    message = _error_text(payload, text)
                    logger.debug(f"Upstream error | method={method} url={url} status={resp.status} message={message}")
                    raise UpstreamHTTPError(
                        resp.status,
                        message,
                        method=method,
                        path=URL(url).path,
                        retry_after=parse_retry_after(resp_headers) if resp.status == 429 else None,
                    )
                return TransportResponse(status=resp.status, payload=payload, headers=resp_headers, elapsed_ms=elapsed_ms)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Request timeout: {method} {url}", cause=e)
        except aiohttp.ClientError as e:
            raise TransportError(f"Request failed: {method} {url}: {e}", cause=e)
