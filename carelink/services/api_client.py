import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from carelink.config import ClientSettings
from carelink.errors import (
    ApiError,
    AuthError,
    CareLinkError,
    InvalidCredentials,
    InvalidServerResponse,
    NetworkError,
)
from carelink.models import ApiEnvelope, LoginCredentials

logger = logging.getLogger(__name__)


class CareLinkApiClient:
    """Typed wrapper around the backend REST contract.

    Every call resolves to the `data` of a `{success, data, message}` envelope
    or raises a `CareLinkError` subclass: `NetworkError` when no response
    arrived, `AuthError` for 401/403, `ApiError` for any other failure.
    """

    def __init__(
        self,
        settings: ClientSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = settings.api_base_url
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _request(
        self,
        method: str,
        path: str,
        token: str | None = None,
        json: dict[str, Any] | None = None,
        auth_error: type[AuthError] = AuthError,
        malformed_error: type[CareLinkError] = ApiError,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, path)
            raise NetworkError(
                "The server took too long to respond. Please check your connection."
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("%s %s failed: %s", method, path, type(exc).__name__)
            raise NetworkError() from exc

        envelope = self._decode(response)

        if response.status_code in (401, 403):
            raise auth_error(envelope.message if envelope else None)
        if response.is_error:
            logger.warning("%s %s returned %d", method, path, response.status_code)
            raise ApiError(
                (envelope.message if envelope else None)
                or f"Server error ({response.status_code})",
                status_code=response.status_code,
            )
        if envelope is None:
            raise malformed_error("Unexpected response from server")
        if not envelope.success:
            raise ApiError(envelope.message or "Request failed", status_code=response.status_code)
        return envelope.data

    @staticmethod
    def _decode(response: httpx.Response) -> ApiEnvelope | None:
        try:
            return ApiEnvelope.model_validate(response.json())
        except (ValueError, ValidationError):
            return None

    async def login(self, credentials: LoginCredentials, remember_me: bool) -> Any:
        payload = {
            "username": credentials.username,
            "password": credentials.password,
            "remember": remember_me,
        }
        try:
            return await self._request(
                "POST",
                "/auth/login",
                json=payload,
                auth_error=InvalidCredentials,
                malformed_error=InvalidServerResponse,
            )
        except ApiError as exc:
            # success=false on a 2xx login means the credentials were rejected
            if exc.status_code is not None and exc.status_code < 400:
                raise InvalidCredentials(exc.message) from exc
            raise

    async def refresh_session(self, token: str) -> Any:
        return await self._request("POST", "/auth/refresh", token=token)

    async def logout(self, token: str) -> None:
        await self._request("POST", "/auth/logout", token=token)

    async def list_notifications(self, token: str) -> list[Any]:
        data = await self._request("GET", "/notifications", token=token)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ApiError("Unexpected notifications payload from server")
        return data

    async def mark_notification_read(self, token: str, notification_id: str) -> None:
        await self._request(
            "PATCH", f"/notifications/{quote(notification_id, safe='')}/read", token=token
        )

    async def mark_all_notifications_read(self, token: str) -> None:
        await self._request("PATCH", "/notifications/read-all", token=token)

    async def delete_notification(self, token: str, notification_id: str) -> None:
        await self._request(
            "DELETE", f"/notifications/{quote(notification_id, safe='')}", token=token
        )

    async def close(self) -> None:
        await self._client.aclose()
