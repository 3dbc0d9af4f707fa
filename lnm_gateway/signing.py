"""Request signing for the exchange REST API.

The exchange authenticates every private call with four headers::

    LNM-ACCESS-KEY         plain API key
    LNM-ACCESS-PASSPHRASE  plain passphrase
    LNM-ACCESS-TIMESTAMP   unix time in milliseconds
    LNM-ACCESS-SIGNATURE   base64(HMAC-SHA256(secret, message))

    message = timestamp + METHOD + path + data

``data`` is the URL-encoded query string (keys sorted, no leading ``?``) for
GET/DELETE, the JSON body for POST/PUT, or the empty string. The signature is
base64, not hex; a hex digest is rejected by the exchange on every call.

The transport must send *exactly* the query string and body bytes carried on
the :class:`SignedRequest`, otherwise the exchange recomputes a different
message and answers 401.
"""
import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

from .credentials import Credentials

HEADER_KEY = "LNM-ACCESS-KEY"
HEADER_SIGNATURE = "LNM-ACCESS-SIGNATURE"
HEADER_PASSPHRASE = "LNM-ACCESS-PASSPHRASE"
HEADER_TIMESTAMP = "LNM-ACCESS-TIMESTAMP"

QUERY_METHODS = frozenset(["GET", "DELETE"])
BODY_METHODS = frozenset(["POST", "PUT"])


@dataclass(frozen=True)
class SignedRequest:
    method: str
    path: str
    query: str
    body: str
    timestamp: str
    signature: str
    headers: Dict[str, str] = field(default_factory=dict)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_query(params: Optional[Mapping[str, Any]]) -> str:
    """Alphabetically ordered, URL-encoded query string; ``None`` values dropped."""
    if not params:
        return ""
    items = sorted((k, _query_value(v)) for k, v in params.items() if v is not None)
    return urlencode(items)


def canonical_body(body: Optional[Mapping[str, Any]]) -> str:
    """Compact JSON, key order preserved, as the exchange's JS backend serializes it."""
    if body is None:
        return ""
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def signature_message(timestamp: str, method: str, path: str, data: str) -> str:
    return f"{timestamp}{method.upper()}{path}{data}"


def compute_signature(secret: str, message: str) -> str:
    digest = hmac.new(secret.strip().encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _now_ms() -> int:
    return int(time.time() * 1000)


def sign(
    credentials: Credentials,
    method: str,
    path: str,
    query_params: Optional[Mapping[str, Any]] = None,
    body: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[int] = None,
) -> SignedRequest:
    """Build the authentication headers for a single outbound request.

    Args:
        credentials: Account credentials (already trimmed by ``Credentials``)
        method: HTTP method
        path: Path exactly as the exchange sees it, including any version prefix
        query_params: Query parameters for GET/DELETE
        body: JSON body for POST/PUT
        timestamp: Milliseconds since epoch; defaults to the current time

    Returns:
        SignedRequest carrying the headers and the exact query/body to send
    """
    method = method.upper()
    ts = str(_now_ms() if timestamp is None else int(timestamp))

    query = canonical_query(query_params) if method in QUERY_METHODS else ""
    body_str = canonical_body(body) if method in BODY_METHODS else ""
    data = query if method in QUERY_METHODS else body_str

    message = signature_message(ts, method, path, data)
    signature = compute_signature(credentials.api_secret.get_secret_value(), message)

    headers = {
        HEADER_KEY: credentials.api_key.strip(),
        HEADER_SIGNATURE: signature,
        HEADER_PASSPHRASE: credentials.passphrase.get_secret_value().strip(),
        HEADER_TIMESTAMP: ts,
    }
    if method in BODY_METHODS:
        headers["Content-Type"] = "application/json"

    return SignedRequest(
        method=method,
        path=path,
        query=query,
        body=body_str,
        timestamp=ts,
        signature=signature,
        headers=headers,
    )


class RequestSigner:
    """Signs requests for one client, applying the API version prefix.

    ``sign_with_prefix`` decides whether the version prefix (``/v2``) is part of
    the signed path. The exchange's v2 API signs the full path.
    """

    def __init__(self, *, path_prefix: str = "/v2", sign_with_prefix: bool = True, now_ms: Callable[[], int] = _now_ms):
        self.path_prefix = path_prefix.rstrip("/")
        self.sign_with_prefix = sign_with_prefix
        self._now_ms = now_ms

    def url_path(self, path: str) -> str:
        path = path if path.startswith("/") else f"/{path}"
        return f"{self.path_prefix}{path}"

    def signed_path(self, path: str) -> str:
        if self.sign_with_prefix:
            return self.url_path(path)
        return path if path.startswith("/") else f"/{path}"

    def sign(
        self,
        credentials: Credentials,
        method: str,
        path: str,
        query_params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> SignedRequest:
        return sign(
            credentials,
            method,
            self.signed_path(path),
            query_params=query_params,
            body=body,
            timestamp=self._now_ms(),
        )

    def prepare_unsigned(
        self,
        method: str,
        path: str,
        query_params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> SignedRequest:
        """Same wire shape as :meth:`sign` for public endpoints, without auth headers."""
        method = method.upper()
        query = canonical_query(query_params) if method in QUERY_METHODS else ""
        body_str = canonical_body(body) if method in BODY_METHODS else ""
        headers = {"Content-Type": "application/json"} if method in BODY_METHODS else {}
        return SignedRequest(
            method=method,
            path=self.url_path(path),
            query=query,
            body=body_str,
            timestamp="",
            signature="",
            headers=headers,
        )
