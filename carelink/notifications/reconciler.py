"""Single merged view over REST-fetched and pushed notifications.

The REST list is the source of truth for completeness; realtime pushes are a
low-latency hint that is merged in by id. Mutations are applied locally first
and then sent to the server. A failed server call is logged and left for the
next `refresh_from_server()` to converge; it is never rolled back locally.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from pydantic import ValidationError

from carelink.errors import CareLinkError, ReconciliationError
from carelink.models import Notification, utc_now
from carelink.realtime.channel import ChannelEvent, RealtimeChannel
from carelink.services.api_client import CareLinkApiClient

logger = logging.getLogger(__name__)

Listener = Callable[[list[Notification]], None]


class SessionReader(Protocol):
    async def require_token(self) -> str: ...

    async def active_token(self) -> str | None: ...


def decode_notification(raw: Any, default_created_at: datetime | None = None) -> Notification:
    """Validate one REST record or push payload. Raises ReconciliationError."""
    if not isinstance(raw, dict):
        raise ReconciliationError(f"Notification payload must be an object, got {type(raw).__name__}")
    data = dict(raw)
    if "metadata" not in data and isinstance(data.get("data"), dict):
        data["metadata"] = data["data"]
    if default_created_at is not None and "createdAt" not in data and "created_at" not in data:
        data["createdAt"] = default_created_at
    try:
        return Notification.model_validate(data)
    except ValidationError as exc:
        raise ReconciliationError(
            f"Malformed notification payload ({exc.error_count()} errors)"
        ) from exc


class NotificationReconciler:
    def __init__(
        self,
        api: CareLinkApiClient,
        session: SessionReader,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._api = api
        self._session = session
        self._clock = clock

        self._items: dict[str, Notification] = {}
        self._first_seen: dict[str, int] = {}
        self._seq = itertools.count()
        self._tombstones: set[str] = set()
        self._pushed_during_refresh: set[str] = set()
        self._refreshes_in_flight = 0
        self._generation = 0

        self._listeners: list[Listener] = []
        self._channel: RealtimeChannel | None = None
        self._background: set[asyncio.Task[None]] = set()
        self.last_error: ReconciliationError | None = None

    # -- view --------------------------------------------------------------

    @property
    def notifications(self) -> list[Notification]:
        """Newest first; equal timestamps keep first-seen order."""
        return sorted(
            self._items.values(),
            key=lambda n: (-n.created_at.timestamp(), self._first_seen[n.id]),
        )

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items.values() if not n.read)

    def get(self, notification_id: str) -> Notification | None:
        return self._items.get(notification_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.notifications
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Notification listener failed")

    # -- merge -------------------------------------------------------------

    def _merge(self, incoming: Notification) -> None:
        existing = self._items.get(incoming.id)
        if existing is None:
            self._items[incoming.id] = incoming
            self._first_seen[incoming.id] = next(self._seq)
            return
        # Last write wins for everything the payload carried, except createdAt.
        update = {
            name: getattr(incoming, name)
            for name in incoming.model_fields_set
            if name != "created_at"
        }
        if incoming.read and not existing.read:
            update["read"] = True
        elif "read" in incoming.model_fields_set and not incoming.read:
            update["read_at"] = None
        self._items[incoming.id] = existing.model_copy(update=update)

    def _remove(self, notification_id: str) -> None:
        self._items.pop(notification_id, None)
        self._first_seen.pop(notification_id, None)

    def on_push(self, raw_event: Any) -> Notification | None:
        """Merge one realtime payload. Raises ReconciliationError if it is malformed."""
        notification = decode_notification(raw_event, default_created_at=self._clock())
        if notification.id in self._tombstones:
            logger.debug("Ignoring push for locally deleted notification %s", notification.id)
            return None
        self._merge(notification)
        if self._refreshes_in_flight:
            self._pushed_during_refresh.add(notification.id)
        self._notify()
        return self._items[notification.id]

    async def refresh_from_server(self) -> list[Notification]:
        """Replace the local collection with the server's list.

        Raises the underlying CareLinkError if the fetch fails; local state is
        left untouched in that case.
        """
        token = await self._session.require_token()
        generation = self._generation
        if self._refreshes_in_flight == 0:
            self._pushed_during_refresh.clear()
        self._refreshes_in_flight += 1
        try:
            records = await self._api.list_notifications(token)
        finally:
            self._refreshes_in_flight -= 1

        if generation != self._generation or await self._session.active_token() != token:
            logger.info("Discarding notification refresh for a session that is no longer active")
            return self.notifications

        fetched: list[Notification] = []
        for record in records:
            try:
                fetched.append(decode_notification(record))
            except ReconciliationError as exc:
                logger.warning("Skipping notification from server: %s", exc.message)

        server_ids = {n.id for n in fetched}
        # Deletes the server has applied no longer need shielding.
        self._tombstones &= server_ids
        keep = self._pushed_during_refresh - server_ids

        for notification_id in list(self._items):
            if notification_id not in server_ids and notification_id not in keep:
                self._remove(notification_id)
        for notification in fetched:
            if notification.id not in self._tombstones:
                self._merge(notification)

        self._notify()
        logger.debug("Notification refresh applied: %d items", len(self._items))
        return self.notifications

    # -- mutations -----------------------------------------------------------

    async def _sync(
        self,
        call: Callable[..., Awaitable[None]],
        *args: Any,
        description: str,
    ) -> bool:
        try:
            token = await self._session.require_token()
            await call(token, *args)
        except CareLinkError as exc:
            error = ReconciliationError(f"Could not {description}: {exc.message}")
            self.last_error = error
            logger.warning("%s; keeping local state until next refresh", error.message)
            return False
        return True

    async def mark_read(self, notification_id: str) -> bool:
        existing = self._items.get(notification_id)
        if existing is not None and not existing.read:
            self._items[notification_id] = existing.model_copy(
                update={"read": True, "read_at": self._clock()}
            )
            self._notify()
        return await self._sync(
            self._api.mark_notification_read,
            notification_id,
            description=f"mark notification {notification_id} as read",
        )

    async def mark_all_read(self) -> bool:
        now = self._clock()
        changed = False
        for notification_id, existing in list(self._items.items()):
            if not existing.read:
                self._items[notification_id] = existing.model_copy(
                    update={"read": True, "read_at": now}
                )
                changed = True
        if changed:
            self._notify()
        return await self._sync(
            self._api.mark_all_notifications_read,
            description="mark all notifications as read",
        )

    async def delete(self, notification_id: str) -> bool:
        self._remove(notification_id)
        self._tombstones.add(notification_id)
        self._notify()
        ok = await self._sync(
            self._api.delete_notification,
            notification_id,
            description=f"delete notification {notification_id}",
        )
        if not ok:
            # Let the next refresh bring it back if the server still has it.
            self._tombstones.discard(notification_id)
        return ok

    def clear(self) -> None:
        """Drop all local state, e.g. on logout. In-flight refreshes are discarded."""
        self._generation += 1
        self._items.clear()
        self._first_seen.clear()
        self._tombstones.clear()
        self._pushed_during_refresh.clear()
        self.last_error = None
        self._notify()

    # -- channel wiring ----------------------------------------------------

    def attach(self, channel: RealtimeChannel) -> None:
        self.detach()
        channel.on(ChannelEvent.NOTIFICATION_NEW, self._handle_push)
        channel.on(ChannelEvent.CONNECT, self._handle_connect)
        self._channel = channel

    def detach(self) -> None:
        if self._channel is None:
            return
        self._channel.off(ChannelEvent.NOTIFICATION_NEW, self._handle_push)
        self._channel.off(ChannelEvent.CONNECT, self._handle_connect)
        self._channel = None

    def _handle_push(self, data: Any) -> None:
        try:
            self.on_push(data)
        except ReconciliationError as exc:
            logger.warning("Dropping realtime notification: %s", exc.message)

    def _handle_connect(self, data: Any) -> None:
        # Pushes sent during an outage are lost; re-fetch after a reconnect.
        if not (isinstance(data, dict) and data.get("reconnected")):
            return
        task = asyncio.create_task(self._refresh_after_reconnect())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_after_reconnect(self) -> None:
        try:
            await self.refresh_from_server()
        except CareLinkError as exc:
            logger.warning("Notification refresh after reconnect failed: %s", exc.message)
