import logging
from datetime import datetime
from typing import Any, Callable

import httpx

from carelink.config import ClientSettings, get_settings
from carelink.models import LoginCredentials, LoginResult, Session, utc_now
from carelink.notifications.reconciler import NotificationReconciler
from carelink.realtime.channel import RealtimeChannel
from carelink.realtime.state import BackoffPolicy
from carelink.realtime.transport import Transport
from carelink.services.api_client import CareLinkApiClient
from carelink.session.manager import SessionLifecycleManager
from carelink.session.store import JsonFileBackend, KeyValueBackend, PersistentSessionStore

logger = logging.getLogger(__name__)


class CareLinkClient:
    """Wires the session, channel and notification components for one process.

    Screens use `session` for auth state and `notifications` for the merged
    notification view; only the session manager touches the channel's
    connection.
    """

    def __init__(
        self,
        api: CareLinkApiClient,
        session: SessionLifecycleManager,
        notifications: NotificationReconciler,
    ) -> None:
        self.api = api
        self.session = session
        self.notifications = notifications
        self.notifications.attach(session.channel)
        self.session.on_session_ended(self.notifications.clear)

    @classmethod
    def create(
        cls,
        settings: ClientSettings | None = None,
        backend: KeyValueBackend | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        ws_transport: Transport | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "CareLinkClient":
        settings = settings or get_settings()
        store = PersistentSessionStore(
            backend or JsonFileBackend(settings.storage_path),
            scope=settings.storage_scope,
        )
        api = CareLinkApiClient(settings, transport=http_transport)
        channel = RealtimeChannel(
            settings.ws_url,
            transport=ws_transport,
            policy=BackoffPolicy.from_settings(settings),
        )
        session = SessionLifecycleManager(settings, store, api, channel, clock=clock)
        notifications = NotificationReconciler(api, session, clock=clock)
        return cls(api, session, notifications)

    async def login(
        self,
        credentials: LoginCredentials | dict[str, Any],
        remember_me: bool = False,
    ) -> LoginResult:
        result = await self.session.login(credentials, remember_me)
        if result.ok:
            self.notifications.clear()
            self.session.start_auto_refresh()
        return result

    async def restore(self) -> Session | None:
        restored = await self.session.restore_session()
        if restored is not None:
            self.session.start_auto_refresh()
        return restored

    async def logout(self) -> None:
        await self.session.logout()

    async def close(self) -> None:
        await self.session.close()
        await self.api.close()
        logger.info("CareLink client closed")
