from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import inspect
import logging
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type

from carelink.errors import ChannelError
from carelink.realtime.state import BackoffPolicy, ConnectionState, ConnectionStatus
from carelink.realtime.transport import Connection, Transport, WebSocketTransport, decode_frame, encode_frame

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class ChannelEvent:
    # Server -> client
    NOTIFICATION_NEW = "notification:new"
    MESSAGE_NEW = "message:new"
    APPOINTMENT_UPDATED = "appointment:updated"

    # Local lifecycle
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CONNECT_ERROR = "connect_error"


class RealtimeChannel:
    """One logical connection to the realtime event server.

    Connection attempts are bounded by a `BackoffPolicy`: after
    `max_attempts` consecutive failures the channel settles into
    `disconnected` and stays there until `connect()` is called again. A drop
    of an established connection starts the same bounded loop in the
    background. Nothing sent while disconnected is queued or replayed.
    """

    def __init__(
        self,
        url: str,
        transport: Transport | None = None,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._transport = transport or WebSocketTransport()
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep

        self._state = ConnectionState()
        self._handlers: dict[str, list[Handler]] = {}
        self._connection: Connection | None = None
        self._token: str | None = None
        self._stopped = True
        self._ever_connected = False
        self._connect_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def state(self) -> ConnectionState:
        return dataclasses.replace(self._state)

    def is_connected(self) -> bool:
        return self._state.status is ConnectionStatus.CONNECTED and self._connection is not None

    # -- lifecycle ---------------------------------------------------------

    async def connect(self, token: str) -> None:
        """Connect with bounded retries. Raises ChannelError once the cap is exhausted."""
        async with self._connect_lock:
            if self.is_connected() and token == self._token:
                return
            await self._cancel_task(self._reconnect_task)
            self._reconnect_task = None
            await self._cancel_task(self._reader_task)
            self._reader_task = None
            await self._close_connection()

            self._token = token
            self._stopped = False
            try:
                await self._connect_with_backoff()
            except ChannelError:
                if self._stopped:
                    logger.debug("Connect aborted by disconnect()")
                    return
                logger.error(
                    "Realtime channel gave up after %d attempts",
                    self._policy.max_attempts,
                )
                raise

    async def disconnect(self) -> None:
        self._stopped = True
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel_task(self._reader_task)
        self._reader_task = None

        was_connected = self._state.status is ConnectionStatus.CONNECTED
        await self._close_connection()
        self._ever_connected = False
        self._set_status(ConnectionStatus.DISCONNECTED)
        if was_connected:
            logger.info("Realtime channel disconnected")
            await self._dispatch(ChannelEvent.DISCONNECT, {"reason": "client"})

    async def _connect_with_backoff(self) -> None:
        retrying = AsyncRetrying(
            stop=self._should_stop,
            wait=self._wait,
            retry=retry_if_exception_type(ChannelError),
            before_sleep=self._before_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt_connect()
        except ChannelError:
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise
        except asyncio.CancelledError:
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise

    def _should_stop(self, retry_state: RetryCallState) -> bool:
        return self._stopped or retry_state.attempt_number >= self._policy.max_attempts

    def _wait(self, retry_state: RetryCallState) -> float:
        return self._policy.delay_for(retry_state.attempt_number)

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self._set_status(ConnectionStatus.BACKING_OFF)
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Realtime connect attempt %d/%d failed, retrying in %.1fs",
            retry_state.attempt_number,
            self._policy.max_attempts,
            delay,
        )

    async def _attempt_connect(self) -> None:
        if self._stopped or self._token is None:
            raise ChannelError("Channel is stopped")

        self._set_status(ConnectionStatus.CONNECTING)
        try:
            connection = await self._transport.open(self._url, self._token)
        except ChannelError as exc:
            self._state.reconnect_attempt += 1
            await self._dispatch(
                ChannelEvent.CONNECT_ERROR,
                {"attempt": self._state.reconnect_attempt, "message": exc.message},
            )
            raise

        if self._stopped:
            await connection.close()
            raise ChannelError("Channel is stopped")

        reconnected = self._ever_connected
        self._connection = connection
        self._ever_connected = True
        self._state.reconnect_attempt = 0
        self._set_status(ConnectionStatus.CONNECTED)
        self._reader_task = asyncio.create_task(self._read_loop(connection))
        logger.info("Realtime channel connected (reconnected=%s)", reconnected)
        await self._dispatch(ChannelEvent.CONNECT, {"reconnected": reconnected})

    async def _read_loop(self, connection: Connection) -> None:
        try:
            while True:
                raw = await connection.recv()
                try:
                    event, data = decode_frame(raw)
                except ValueError:
                    logger.warning("Dropping malformed realtime frame")
                    continue
                await self._dispatch(event, data)
        except ChannelError as exc:
            if self._stopped or connection is not self._connection:
                return
            logger.warning("Realtime connection lost: %s", exc.message)
            self._connection = None
            self._set_status(ConnectionStatus.BACKING_OFF)
            await self._dispatch(ChannelEvent.DISCONNECT, {"reason": exc.message})
            if not self._stopped:
                self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self._connect_with_backoff()
        except ChannelError:
            if not self._stopped:
                logger.error(
                    "Realtime channel gave up reconnecting after %d attempts",
                    self._policy.max_attempts,
                )

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception:
            logger.warning("Error while closing realtime connection", exc_info=True)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _set_status(self, status: ConnectionStatus) -> None:
        if self._state.status is not status:
            logger.debug("Realtime channel %s -> %s", self._state.status.value, status.value)
        self._state.status = status

    # -- publish / subscribe ----------------------------------------------

    async def emit(self, event: str, payload: Any) -> bool:
        """Send an event. Returns False (and logs) instead of raising when not connected."""
        if not self.is_connected() or self._connection is None:
            logger.warning("Socket not connected. Cannot emit event: %s", event)
            return False
        try:
            await self._connection.send(encode_frame(event, payload))
        except ChannelError as exc:
            logger.warning("Emit of %s failed: %s", event, exc.message)
            return False
        return True

    def on(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def _dispatch(self, event: str, data: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Realtime handler for '%s' failed", event)
