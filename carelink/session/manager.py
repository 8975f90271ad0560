from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from carelink.config import ClientSettings
from carelink.errors import (
    AuthError,
    CareLinkError,
    ChannelError,
    InvalidServerResponse,
    NetworkError,
    SessionExpiredError,
    StorageError,
)
from carelink.models import (
    LoginCredentials,
    LoginPayload,
    LoginResult,
    RefreshPayload,
    Session,
    UserProfile,
    utc_now,
)
from carelink.realtime.channel import RealtimeChannel
from carelink.routing.role_router import normalize_role, route_for
from carelink.services.api_client import CareLinkApiClient
from carelink.session.store import (
    KEY_REMEMBER_ME,
    KEY_SESSION_EXPIRY,
    KEY_SESSION_ID,
    KEY_TOKEN,
    KEY_USER,
    PersistentSessionStore,
    from_epoch_ms,
)

logger = logging.getLogger(__name__)

EXPIRING_SOON_WINDOW = timedelta(minutes=10)


class SessionLifecycleManager:
    """Owns the authenticated session and the realtime channel opened with it.

    Readers never see an expired session: the first read after expiry evicts
    it from storage and tears down the channel. No call here retries; retry
    policy belongs to the caller.
    """

    def __init__(
        self,
        settings: ClientSettings,
        store: PersistentSessionStore,
        api: CareLinkApiClient,
        channel: RealtimeChannel,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._api = api
        self._channel = channel
        self._clock = clock
        self._sleep = sleep
        self._session_ttl = timedelta(hours=settings.session_ttl_hours)
        self._remember_me_ttl = timedelta(days=settings.remember_me_ttl_days)
        self._refresh_margin = timedelta(minutes=settings.refresh_margin_minutes)

        self._channel_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._refreshing = False
        self._session_ended: list[Callable[[], Any]] = []

    @property
    def channel(self) -> RealtimeChannel:
        return self._channel

    def on_session_ended(self, callback: Callable[[], Any]) -> None:
        """Call `callback` whenever the session goes away: logout, expiry or corruption."""
        if callback not in self._session_ended:
            self._session_ended.append(callback)

    def _end_session(self) -> None:
        for callback in list(self._session_ended):
            try:
                callback()
            except Exception:
                logger.exception("Session-ended callback failed")

    def compute_expiry(self, remember_me: bool, now: datetime) -> datetime:
        # Storage keeps whole epoch milliseconds; match it so the returned
        # session and the stored one expire at the same instant.
        now = now.replace(microsecond=now.microsecond - now.microsecond % 1000)
        return now + (self._remember_me_ttl if remember_me else self._session_ttl)

    # -- login / logout ----------------------------------------------------

    async def login(
        self,
        credentials: LoginCredentials | dict[str, Any],
        remember_me: bool = False,
    ) -> LoginResult:
        """Authenticate and persist the session. Never raises: failures come back in the result."""
        try:
            creds = (
                credentials
                if isinstance(credentials, LoginCredentials)
                else LoginCredentials.model_validate(credentials)
            )
        except ValidationError:
            return LoginResult(error=AuthError("Username and password are required"))

        try:
            data = await self._api.login(creds, remember_me)
            payload = self._parse_login_payload(data)
            now = self._clock()
            session = Session(
                token=payload.token,
                user=payload.user,
                session_id=payload.session_id,
                expires_at=self.compute_expiry(remember_me, now),
                remember_me=remember_me,
                issued_at=now,
            )
            await self._store.save_session(session)
        except NetworkError as exc:
            logger.warning("Login failed: backend unreachable at %s", self._api.base_url)
            return LoginResult(
                error=NetworkError(
                    f"{exc.message}\n\nCannot reach the server at {self._api.base_url}. "
                    "Make sure this device is online and the API address points at "
                    "the backend (a phone needs the computer's LAN address, not localhost)."
                )
            )
        except CareLinkError as exc:
            logger.info("Login failed: %s", type(exc).__name__)
            return LoginResult(error=exc)

        self._start_channel(session.token)
        logger.info(
            "Login succeeded (role=%s, remember_me=%s)",
            normalize_role(session.user.role),
            remember_me,
        )
        return LoginResult(session=session, route=route_for(session.user.role))

    @staticmethod
    def _parse_login_payload(data: Any) -> LoginPayload:
        if not isinstance(data, dict) or not data.get("token") or not data.get("user"):
            raise InvalidServerResponse()
        try:
            return LoginPayload.model_validate(data)
        except ValidationError as exc:
            raise InvalidServerResponse() from exc

    async def logout(self) -> None:
        self.stop_auto_refresh()
        token = await self._store.get_token()
        if token:
            try:
                await self._api.logout(token)
            except CareLinkError as exc:
                logger.info("Server logout failed (%s); clearing local session anyway", exc.message)
        await self._teardown_channel()
        self._end_session()
        await self._store.clear()
        logger.info("Logged out")

    # -- readers -----------------------------------------------------------

    async def get_session(self) -> Session | None:
        """The stored session, or None if absent, incomplete or expired (expired ones are evicted)."""
        fields = await self._store.load()
        token = fields.get(KEY_TOKEN)
        expiry = fields.get(KEY_SESSION_EXPIRY)
        user = fields.get(KEY_USER)
        if not token or expiry is None or not user:
            return None

        try:
            session = Session(
                token=token,
                user=UserProfile.model_validate(user),
                session_id=fields.get(KEY_SESSION_ID),
                expires_at=from_epoch_ms(expiry),
                remember_me=bool(fields.get(KEY_REMEMBER_ME)),
            )
        except (ValidationError, TypeError, ValueError, OverflowError):
            logger.warning("Stored session is corrupt; clearing it")
            await self._evict()
            return None

        if session.is_expired(self._clock()):
            logger.info("Stored session expired at %s; evicting", session.expires_at.isoformat())
            await self._evict()
            return None
        return session

    async def is_session_valid(self) -> bool:
        return await self.get_session() is not None

    async def active_token(self) -> str | None:
        session = await self.get_session()
        return session.token if session else None

    async def require_token(self) -> str:
        """Token for a protected call; raises SessionExpiredError without touching the network."""
        token = await self.active_token()
        if token is None:
            raise SessionExpiredError()
        return token

    async def is_session_expiring_soon(self, within: timedelta = EXPIRING_SOON_WINDOW) -> bool:
        expiry = await self._store.get_session_expiry()
        if expiry is None:
            return False
        remaining = expiry - self._clock()
        return timedelta(0) < remaining < within

    async def _evict(self) -> None:
        self.stop_auto_refresh()
        await self._teardown_channel()
        self._end_session()
        await self._store.clear()

    # -- refresh / restore -------------------------------------------------

    async def restore_session(self) -> Session | None:
        """On process start: reopen the channel for a still-valid stored session."""
        session = await self.get_session()
        if session is None:
            return None
        self._start_channel(session.token)
        logger.info("Session restored (expires %s)", session.expires_at.isoformat())
        return session

    async def refresh_session(self) -> bool:
        if self._refreshing:
            return False
        self._refreshing = True
        try:
            session = await self.get_session()
            if session is None:
                return False
            data = await self._api.refresh_session(session.token)
            payload = RefreshPayload.model_validate(data)

            await self._store.set_token(payload.token)
            if payload.user is not None:
                await self._store.set_user(payload.user.model_dump(by_alias=True))
            if payload.session_id:
                await self._store.set_session_id(payload.session_id)
            await self._store.set_session_expiry(
                self.compute_expiry(session.remember_me, self._clock())
            )
        except ValidationError:
            logger.warning("Session refresh returned an invalid payload")
            return False
        except CareLinkError as exc:
            logger.warning("Session refresh failed: %s", exc.message)
            return False
        finally:
            self._refreshing = False

        if payload.token != session.token:
            self._start_channel(payload.token)
        logger.info("Session refreshed")
        return True

    def start_auto_refresh(self) -> None:
        """Refresh `refresh_margin` before expiry, rescheduling after every success."""
        self.stop_auto_refresh()
        self._refresh_task = asyncio.create_task(self._auto_refresh_loop())

    def stop_auto_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _auto_refresh_loop(self) -> None:
        while True:
            try:
                expiry = await self._store.get_session_expiry()
            except StorageError as exc:
                logger.warning("Auto-refresh stopped: %s", exc.message)
                return
            if expiry is None:
                return
            delay = (expiry - self._refresh_margin - self._clock()).total_seconds()
            if delay <= 0:
                return
            await self._sleep(delay)
            if not await self.refresh_session():
                return

    # -- channel ownership -------------------------------------------------

    def _start_channel(self, token: str) -> None:
        if self._channel_task is not None and not self._channel_task.done():
            self._channel_task.cancel()
        self._channel_task = asyncio.create_task(self._open_channel(token))

    async def _open_channel(self, token: str) -> None:
        try:
            await self._channel.connect(token)
        except ChannelError as exc:
            # Silent to the end user; notifications go stale until the next refresh.
            logger.warning("Realtime channel unavailable: %s", exc.message)

    async def _teardown_channel(self) -> None:
        task, self._channel_task = self._channel_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._channel.disconnect()

    async def wait_for_channel(self) -> None:
        """Wait for the background connect started by login/restore to settle."""
        task = self._channel_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        """Stop background work without touching the stored session."""
        task = self._refresh_task
        self.stop_auto_refresh()
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._teardown_channel()
