"""Durable, scoped key/value storage for the authenticated session."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from carelink.errors import StorageError
from carelink.models import Session

logger = logging.getLogger(__name__)

KEY_TOKEN = "token"
KEY_USER = "user"
KEY_SESSION_ID = "sessionId"
KEY_SESSION_EXPIRY = "sessionExpiry"
KEY_REMEMBER_ME = "rememberMe"

SESSION_KEYS = (KEY_TOKEN, KEY_USER, KEY_SESSION_ID, KEY_SESSION_EXPIRY, KEY_REMEMBER_ME)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def to_epoch_ms(value: datetime) -> int:
    """Whole milliseconds since the epoch, truncated. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _ONE_MS


def from_epoch_ms(value: int | float) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


class KeyValueBackend(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryBackend:
    """Process-local backend. Values do not survive a restart."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileBackend:
    """All keys in one JSON document on disk.

    File I/O is blocking, so it runs in the default executor. Read-modify-write
    cycles are serialised with a lock so concurrent setters do not drop keys.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        raw = self._path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"{self._path} does not contain a JSON object")
        return data

    def _write_all(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data), encoding="utf-8")

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Session storage at {self._path} failed: {exc}") from exc

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            data = await self._run(self._read_all)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await self._run(self._read_all)
            data[key] = value
            await self._run(self._write_all, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await self._run(self._read_all)
            if key in data:
                del data[key]
                await self._run(self._write_all, data)


class PersistentSessionStore:
    def __init__(self, backend: KeyValueBackend, scope: str = "@carelink:") -> None:
        self._backend = backend
        self._scope = scope

    def _key(self, name: str) -> str:
        return f"{self._scope}{name}"

    async def _get(self, name: str) -> Any | None:
        try:
            return await self._backend.get(self._key(name))
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Could not read '{name}' from session storage") from exc

    async def _set(self, name: str, value: Any) -> None:
        try:
            await self._backend.set(self._key(name), value)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Could not write '{name}' to session storage") from exc

    async def _delete(self, name: str) -> None:
        try:
            await self._backend.delete(self._key(name))
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Could not delete '{name}' from session storage") from exc

    async def get_token(self) -> str | None:
        return await self._get(KEY_TOKEN) or None

    async def set_token(self, token: str) -> None:
        await self._set(KEY_TOKEN, token)

    async def get_user(self) -> dict[str, Any] | None:
        return await self._get(KEY_USER)

    async def set_user(self, user: dict[str, Any]) -> None:
        await self._set(KEY_USER, user)

    async def get_session_id(self) -> str | None:
        return await self._get(KEY_SESSION_ID)

    async def set_session_id(self, session_id: str | None) -> None:
        if session_id is None:
            await self._delete(KEY_SESSION_ID)
        else:
            await self._set(KEY_SESSION_ID, session_id)

    async def get_session_expiry(self) -> datetime | None:
        value = await self._get(KEY_SESSION_EXPIRY)
        if value is None:
            return None
        return from_epoch_ms(value)

    async def set_session_expiry(self, expires_at: datetime) -> None:
        await self._set(KEY_SESSION_EXPIRY, to_epoch_ms(expires_at))

    async def get_remember_me(self) -> bool:
        return bool(await self._get(KEY_REMEMBER_ME))

    async def set_remember_me(self, remember_me: bool) -> None:
        await self._set(KEY_REMEMBER_ME, remember_me)

    async def load(self) -> dict[str, Any]:
        """Raw stored fields, keyed without the scope prefix. Missing keys are omitted."""
        fields: dict[str, Any] = {}
        for name in SESSION_KEYS:
            value = await self._get(name)
            if value is not None:
                fields[name] = value
        return fields

    async def save_session(self, session: Session) -> None:
        # Token last: readers treat a session as present once token+expiry exist.
        await self.set_user(session.user.model_dump(by_alias=True))
        await self.set_session_id(session.session_id)
        await self.set_remember_me(session.remember_me)
        await self.set_session_expiry(session.expires_at)
        await self.set_token(session.token)

    async def clear(self) -> None:
        for name in SESSION_KEYS:
            await self._delete(name)
        logger.debug("Session storage cleared (scope=%s)", self._scope)
