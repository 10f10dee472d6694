# support_sync/infrastructure/api_client.py
import json
from collections.abc import Callable
from typing import Any

import httpx
import keyring
import keyring.errors

from support_sync.infrastructure.data_mappers import (
    MAPPING_ERRORS,
    DataMapper,
    message_mapper,
    notification_mapper,
    room_mapper,
)
from support_sync.infrastructure.logger import get_logger


class ApiResponse:
    def __init__(self, success, data=None, status_code=None, error=None):
        self.success = success
        self.data = data
        self.status_code = status_code
        self.error = error

    def __repr__(self):
        return (
            f"ApiResponse(success={self.success}, status_code={self.status_code}, "
            f"error={self.error!r})"
        )


class ApiClient:
    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        on_unauthorized: Callable[[ApiResponse], None] | None = None,
        keyring_service: str = "support-sync",
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.on_unauthorized = on_unauthorized
        self.keyring_service = keyring_service
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.logger = get_logger("ApiClient")

        if self.access_token is None:
            self._load_stored_token()

    def _load_stored_token(self):
        """
        Loads the bearer credential left in secure storage by the auth layer.
        """
        try:
            stored_access_token = keyring.get_password(
                self.keyring_service, "access_token"
            )
            if stored_access_token:
                self.access_token = stored_access_token
                self.logger.info("Loaded stored access token")
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Error loading stored access token: {str(e)}")
            self.access_token = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self.logger.info("Closed HTTP client.")

    def _handle_response(self, response: httpx.Response) -> ApiResponse:
        """
        Handles HTTP responses and returns an ApiResponse object.
        """
        if 200 <= response.status_code < 300:
            try:
                data = response.json() if response.content else {}
            except json.JSONDecodeError:
                data = {}
            return ApiResponse(True, data=data, status_code=response.status_code)
        return ApiResponse(False, status_code=response.status_code, error=response.text)

    async def _request(self, method: str, endpoint: str, **kwargs) -> ApiResponse:
        """
        Makes an authenticated HTTP request to the specified endpoint.

        Network errors come back as an unsuccessful ApiResponse. A 401 is handed
        to the ``on_unauthorized`` interceptor and then reported as a plain
        failure; this client never retries it.
        """
        headers = kwargs.pop("headers", {})
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        try:
            response = await self._get_client().request(
                method, endpoint, headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            self.logger.error(f"HTTP request exception: {str(e)}")
            return ApiResponse(False, error=str(e) or e.__class__.__name__)

        api_response = self._handle_response(response)
        if api_response.status_code == 401:
            self.logger.warning(f"Received 401 Unauthorized for {method} {endpoint}.")
            if self.on_unauthorized is not None:
                self.on_unauthorized(api_response)
        return api_response

    def _map(
        self, response: ApiResponse, key: str, mapper: DataMapper, many: bool = False
    ) -> ApiResponse:
        if not response.success:
            return response
        payload: Any = response.data
        if isinstance(payload, dict):
            payload = payload.get(key)
        try:
            if many:
                data = [mapper.to_entity(item) for item in payload or []]
            else:
                data = mapper.to_entity(payload)
        except MAPPING_ERRORS as e:
            self.logger.error(f"Malformed '{key}' payload: {str(e)}")
            return ApiResponse(
                False,
                status_code=response.status_code,
                error=f"Malformed response: {str(e)}",
            )
        return ApiResponse(True, data=data, status_code=response.status_code)

    # Chat rooms and messages

    async def get_rooms(self) -> ApiResponse:
        """
        Retrieves the chat rooms visible to the caller.
        """
        response = await self._request("GET", "/chat/rooms")
        return self._map(response, "rooms", room_mapper, many=True)

    async def create_room(self, room_data: dict[str, Any]) -> ApiResponse:
        response = await self._request("POST", "/chat/rooms", json=room_data)
        if response.success:
            self.logger.info(f"Chat room created successfully: {room_data}")
        else:
            self.logger.error(f"Failed to create chat room: {response.error}")
        return self._map(response, "room", room_mapper)

    async def get_messages(self, room_id: str, limit: int = 50, offset: int = 0) -> ApiResponse:
        """
        Retrieves one page of a room's messages, oldest first.
        """
        params = {"limit": limit}
        if offset:
            params["offset"] = offset
        response = await self._request(
            "GET", f"/chat/rooms/{room_id}/messages", params=params
        )
        return self._map(response, "messages", message_mapper, many=True)

    async def send_message(self, room_id: str, content: str) -> ApiResponse:
        response = await self._request(
            "POST", f"/chat/rooms/{room_id}/messages", json={"content": content}
        )
        if response.success:
            self.logger.info(f"Message sent to room '{room_id}'")
        else:
            self.logger.error(
                f"Failed to send message to room '{room_id}': {response.error}"
            )
        return self._map(response, "message", message_mapper)

    async def mark_room_read(self, room_id: str) -> ApiResponse:
        response = await self._request("PUT", f"/chat/rooms/{room_id}/read")
        if not response.success:
            self.logger.error(
                f"Failed to mark room '{room_id}' as read: {response.error}"
            )
        return response

    # Notifications

    async def get_notifications(
        self, recipient_id: str, is_read: bool | None = None, limit: int | None = None
    ) -> ApiResponse:
        params: dict[str, Any] = {"recipientId": recipient_id}
        if is_read is not None:
            params["isRead"] = str(is_read).lower()
        if limit:
            params["limit"] = limit
        response = await self._request("GET", "/notifications", params=params)
        return self._map(response, "notifications", notification_mapper, many=True)

    async def mark_notification_read(self, notification_id: str) -> ApiResponse:
        response = await self._request("PUT", f"/notifications/{notification_id}/read")
        return self._gone_is_success(response)

    async def dismiss_notification(self, notification_id: str) -> ApiResponse:
        response = await self._request(
            "PUT", f"/notifications/{notification_id}/dismiss"
        )
        return self._gone_is_success(response)

    async def mark_all_notifications_read(self, recipient_id: str) -> ApiResponse:
        return await self._request(
            "PUT", "/notifications/mark-all-read", json={"recipientId": recipient_id}
        )

    async def delete_notification(self, notification_id: str) -> ApiResponse:
        response = await self._request("DELETE", f"/notifications/{notification_id}")
        return self._gone_is_success(response)

    def _gone_is_success(self, response: ApiResponse) -> ApiResponse:
        # The notification was already deleted server-side; nothing left to confirm.
        if response.status_code == 404:
            return ApiResponse(True, data={}, status_code=404)
        return response
