"""Session lifecycle manager for the exchange.

Owns the single process-wide session token together with the login
failure bookkeeping (ban cool-down, exponential backoff, last error).
Other components hold a reference to the manager and ask it for a token;
they never mutate session state themselves.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from goalreact.services.betfair_transport import BetfairTransport, ErrorKind, ExchangeError
from goalreact.utils.clock import SystemClock

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NO_SESSION = "NO_SESSION"
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    BACKOFF = "BACKOFF"


class SessionManager:
    """Owned handle around the exchange session token."""

    def __init__(
        self,
        transport: BetfairTransport,
        username: str,
        password: str,
        clock=None,
        backoff_base_seconds: int = 60,
        backoff_max_seconds: int = 600,
        ban_cooldown_minutes: int = 15,
        on_retry_scheduled: Callable[[datetime], None] | None = None,
    ):
        self.transport = transport
        self.username = username
        self.password = password
        self.clock = clock or SystemClock()
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.ban_cooldown = timedelta(minutes=ban_cooldown_minutes)
        self.on_retry_scheduled = on_retry_scheduled

        self._token: str | None = None
        self.blocked_until: datetime | None = None
        self.next_retry_at: datetime | None = None
        self.backoff_seconds: int = backoff_base_seconds
        self.last_error: str | None = None
        self.last_error_at: datetime | None = None
        self.last_login_at: datetime | None = None
        self.last_keepalive_at: datetime | None = None
        self._login_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, transport: BetfairTransport, **kwargs) -> "SessionManager":
        return cls(
            transport=transport,
            username=settings.betfair_username,
            password=settings.betfair_password,
            backoff_base_seconds=settings.login_backoff_base_seconds,
            backoff_max_seconds=settings.login_backoff_max_seconds,
            ban_cooldown_minutes=settings.login_ban_cooldown_minutes,
            **kwargs,
        )

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def state(self) -> SessionState:
        now = self.clock.now()
        if self._token:
            return SessionState.ACTIVE
        if self.blocked_until and now < self.blocked_until:
            return SessionState.BLOCKED
        if self.next_retry_at and now < self.next_retry_at:
            return SessionState.BACKOFF
        return SessionState.NO_SESSION

    async def ensure_login(self, trigger: str = "manual") -> str | None:
        """Return a session token, logging in if needed. Never raises.

        Returns None while blocked by a ban cool-down, while waiting out a
        backoff delay, or when the login attempt itself fails.
        """
        if self._token:
            return self._token

        async with self._login_lock:
            if self._token:
                return self._token

            state = self.state
            if state is SessionState.BLOCKED:
                logger.info(
                    f"[session] Login skipped ({trigger}): blocked until {self.blocked_until.isoformat()}"
                )
                return None
            if state is SessionState.BACKOFF:
                logger.debug(
                    f"[session] Login skipped ({trigger}): backoff until {self.next_retry_at.isoformat()}"
                )
                return None
            return await self._login(trigger)

    async def _login(self, trigger: str) -> str | None:
        logger.info(f"[session] Logging in ({trigger})")
        try:
            token = await self.transport.cert_login(self.username, self.password)
        except ExchangeError as e:
            self._record_failure(e, trigger)
            return None
        except Exception as e:
            logger.error(f"[session] Unexpected login error ({trigger}): {e}", exc_info=True)
            self._record_failure(ExchangeError(ErrorKind.AUTH, str(e)), trigger)
            return None

        now = self.clock.now()
        self._token = token
        self.last_login_at = now
        self.blocked_until = None
        self.next_retry_at = None
        self.backoff_seconds = self.backoff_base_seconds
        self.last_error = None
        logger.info(f"[session] Login succeeded ({trigger})")
        return token

    def _record_failure(self, error: ExchangeError, trigger: str):
        now = self.clock.now()
        self.last_error = str(error)
        self.last_error_at = now

        if error.kind is ErrorKind.BANNED:
            self.blocked_until = now + self.ban_cooldown
            self.next_retry_at = None
            logger.warning(
                f"[session] Login banned ({trigger}): cooling down until {self.blocked_until.isoformat()}"
            )
            retry_at = self.blocked_until
        else:
            delay = self.backoff_seconds
            self.next_retry_at = now + timedelta(seconds=delay)
            self.backoff_seconds = min(delay * 2, self.backoff_max_seconds)
            logger.warning(f"[session] Login failed ({trigger}): {error}; retrying in {delay}s")
            retry_at = self.next_retry_at

        if self.on_retry_scheduled is not None:
            self.on_retry_scheduled(retry_at)

    def invalidate(self, reason: str = "invalidated"):
        if self._token:
            logger.info(f"[session] Token invalidated: {reason}")
        self._token = None

    async def keep_alive(self) -> bool:
        """Extend the current session, re-logging in on failure.

        Returns True when the held session was renewed.
        """
        token = self._token
        if not token:
            return await self.ensure_login("keepalive") is not None

        try:
            rotated = await self.transport.keep_alive(token)
        except ExchangeError as e:
            self.last_error = str(e)
            self.last_error_at = self.clock.now()
            logger.warning(f"[session] Keep-alive failed: {e}")
            self.invalidate("keep-alive failure")
            await self.ensure_login("keepalive-recovery")
            return False

        self.last_keepalive_at = self.clock.now()
        if rotated and rotated != token:
            logger.info("[session] Keep-alive returned a rotated token")
            self._token = rotated
        return True

    async def retry_login(self) -> str | None:
        """Scheduled follow-up once a backoff delay or ban cool-down has elapsed."""
        return await self.ensure_login("scheduled-retry")

    def diagnostics(self) -> dict:
        blocked = self.blocked_until if self.state is SessionState.BLOCKED else None
        return {
            "session_state": self.state.value,
            "has_session_token": self._token is not None,
            "login_blocked_until": blocked.isoformat() if blocked else None,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "backoff_seconds": self.backoff_seconds,
            "last_login_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "last_keepalive_at": self.last_keepalive_at.isoformat() if self.last_keepalive_at else None,
        }
