"""HTTP transport for the exchange identity and betting endpoints.

Failures surface as ``ExchangeError`` carrying an ``ErrorKind`` derived from
structured response fields (login status, APING error code, HTTP status,
httpx exception class), so callers branch on data rather than messages.
"""

import base64
import logging
import ssl
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from goalreact.utils.constants import (
    AUTH_ENDPOINTS,
    INVALID_SESSION_CODES,
    LOGIN_BAN_STATUSES,
    REGION_ALIASES,
    RPC_PREFIX,
    TRANSIENT_API_CODES,
)

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INVALID_SESSION = "invalid_session"
    TRANSIENT = "transient"
    BANNED = "banned"
    AUTH = "auth"
    API = "api"
    NO_SESSION = "no_session"


class ExchangeError(Exception):
    def __init__(self, kind: ErrorKind, message: str, code: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} ({self.code})" if self.code else base


def resolve_region(region: str | None) -> str:
    key = (region or "GLOBAL").strip().upper()
    key = REGION_ALIASES.get(key, key)
    return key if key in AUTH_ENDPOINTS else "GLOBAL"


def load_pfx_bytes(pfx_path: str = "", pfx_base64: str = "") -> bytes:
    if pfx_base64:
        return base64.b64decode(pfx_base64)
    return Path(pfx_path).read_bytes()


def build_ssl_context(pfx_bytes: bytes, password: str = "") -> ssl.SSLContext:
    """Client-certificate SSL context from a PKCS#12 bundle."""
    from cryptography.hazmat.primitives.serialization import (
        BestAvailableEncryption,
        Encoding,
        NoEncryption,
        PrivateFormat,
        pkcs12,
    )

    secret = password.encode() if password else None
    key, cert, extra_certs = pkcs12.load_key_and_certificates(pfx_bytes, secret)
    if key is None or cert is None:
        raise ValueError("PFX bundle does not contain a private key and certificate")

    encryption = BestAvailableEncryption(secret) if secret else NoEncryption()
    context = ssl.create_default_context()
    # ssl only loads chains from files; the PEM copies live for the duration of the load
    with tempfile.TemporaryDirectory() as tmp:
        cert_path = Path(tmp) / "client.crt"
        key_path = Path(tmp) / "client.key"
        chain = [cert] + list(extra_certs or [])
        cert_path.write_bytes(b"".join(c.public_bytes(Encoding.PEM) for c in chain))
        key_path.write_bytes(key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, encryption))
        context.load_cert_chain(str(cert_path), str(key_path), password=password or None)
    return context


class BetfairTransport:
    """Raw exchange calls: certificate login, keep-alive and JSON-RPC."""

    def __init__(
        self,
        app_key: str,
        region: str = "GLOBAL",
        rpc_url: str = "https://api.betfair.com/exchange/betting/json-rpc/v1",
        timeout: float = 15.0,
        ssl_context: ssl.SSLContext | None = None,
    ):
        self.app_key = app_key
        self.region = resolve_region(region)
        cert_host, keepalive_host = AUTH_ENDPOINTS[self.region]
        self.login_url = f"https://{cert_host}/api/certlogin"
        self.keepalive_url = f"https://{keepalive_host}/api/keepAlive"
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._ssl_context = ssl_context
        self._login_client: httpx.AsyncClient | None = None
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings) -> "BetfairTransport":
        pfx = load_pfx_bytes(settings.betfair_pfx_path, settings.betfair_pfx_base64)
        return cls(
            app_key=settings.betfair_app_key,
            region=settings.betfair_region,
            rpc_url=settings.betfair_rpc_url,
            timeout=settings.http_timeout_seconds,
            ssl_context=build_ssl_context(pfx, settings.betfair_pfx_password),
        )

    def _ensure_clients(self):
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(timeout=self.timeout)
        if self._ssl_context is not None:
            self._login_client = httpx.AsyncClient(timeout=self.timeout, verify=self._ssl_context)
        else:
            self._login_client = self._client

    async def close(self):
        if self._login_client is not None and self._login_client is not self._client:
            await self._login_client.aclose()
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._login_client = None

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        rejected_kind: ErrorKind = ErrorKind.API,
        **kwargs,
    ) -> Any:
        try:
            response = await client.post(url, **kwargs)
        except httpx.TransportError as e:
            raise ExchangeError(ErrorKind.TRANSIENT, f"{type(e).__name__} calling {url}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise ExchangeError(
                ErrorKind.TRANSIENT, f"HTTP {response.status_code} from {url}",
                code=f"HTTP_{response.status_code}",
            )
        if response.status_code >= 400:
            raise ExchangeError(
                rejected_kind,
                f"HTTP {response.status_code} from {url}",
                code=f"HTTP_{response.status_code}",
            )
        try:
            return response.json()
        except ValueError as e:
            raise ExchangeError(ErrorKind.TRANSIENT, f"Non-JSON response from {url}") from e

    async def cert_login(self, username: str, password: str) -> str:
        """Exchange credentials for a session token."""
        self._ensure_clients()
        body = await self._post(
            self._login_client,
            self.login_url,
            rejected_kind=ErrorKind.AUTH,
            data={"username": username, "password": password},
            headers={"X-Application": self.app_key, "Accept": "application/json"},
        )
        status = body.get("loginStatus")
        token = body.get("sessionToken")
        if status == "SUCCESS" and token:
            return token
        if status in LOGIN_BAN_STATUSES:
            raise ExchangeError(ErrorKind.BANNED, "Login temporarily banned", code=status)
        raise ExchangeError(ErrorKind.AUTH, "Login rejected", code=status or "UNKNOWN")

    async def keep_alive(self, token: str) -> str | None:
        """Extend the session. Returns a rotated token when the server issues one."""
        self._ensure_clients()
        body = await self._post(
            self._client,
            self.keepalive_url,
            rejected_kind=ErrorKind.INVALID_SESSION,
            headers={
                "X-Application": self.app_key,
                "X-Authentication": token,
                "Accept": "application/json",
            },
        )
        if body.get("status") != "SUCCESS":
            error = body.get("error") or "UNKNOWN"
            kind = ErrorKind.TRANSIENT if error == "INTERNAL_ERROR" else ErrorKind.INVALID_SESSION
            raise ExchangeError(kind, "Keep-alive failed", code=error)
        return body.get("token") or None

    async def rpc(self, token: str, method: str, params: dict) -> Any:
        """Call one betting API method and return its ``result``."""
        self._ensure_clients()
        payload = [{"jsonrpc": "2.0", "method": RPC_PREFIX + method, "params": params, "id": 1}]
        logger.debug(f"RPC {method}")
        body = await self._post(
            self._client,
            self.rpc_url,
            json=payload,
            headers={
                "X-Application": self.app_key,
                "X-Authentication": token,
                "Content-Type": "application/json",
            },
        )
        entry = body[0] if isinstance(body, list) and body else body
        if not isinstance(entry, dict):
            raise ExchangeError(ErrorKind.API, f"Malformed response for {method}")

        error = entry.get("error")
        if error:
            data = error.get("data") or {}
            code = (data.get("APINGException") or {}).get("errorCode") or str(error.get("code"))
            if code in INVALID_SESSION_CODES:
                kind = ErrorKind.INVALID_SESSION
            elif code in TRANSIENT_API_CODES:
                kind = ErrorKind.TRANSIENT
            else:
                kind = ErrorKind.API
            raise ExchangeError(kind, f"{method} failed", code=code)
        return entry.get("result")
