# support_sync/infrastructure/transport.py
import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis
from pydantic import ValidationError

from support_sync.domain.entities import Message, Notification
from support_sync.domain.events import PushEnvelope, PushEventKind
from support_sync.infrastructure.data_mappers import (
    MAPPING_ERRORS,
    message_mapper,
    notification_mapper,
)
from support_sync.infrastructure.logger import get_logger

JOIN_CHANNEL = "join_user_room"


class TransportClient:
    """
    Push channel for one identity at a time, carried over Redis pub/sub.

    Each event kind has a single handler; registering a new one replaces the
    previous handler. Connection problems never reach the handlers: they are
    logged and followed by a reconnect with exponential backoff.
    """

    def __init__(
        self,
        host: str,
        port: int,
        logger: logging.Logger | None = None,
        client_factory: Callable[[], redis.Redis] | None = None,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        read_timeout: float = 1.0,
    ):
        self.host = host
        self.port = port
        self.logger = logger or get_logger("TransportClient")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.read_timeout = read_timeout
        self._client_factory = client_factory or self._create_client

        self.client: redis.Redis | None = None
        self.pubsub = None
        self.identity_id: str | None = None
        self._listener: asyncio.Task | None = None
        self._active = False
        self._connected = False

        self._message_handler: Callable[[Message], None] | None = None
        self._notification_handler: Callable[[Notification], None] | None = None
        self._status_handler: Callable[[bool], None] | None = None

    def _create_client(self) -> redis.Redis:
        return redis.Redis(host=self.host, port=self.port, db=0, decode_responses=True)

    @staticmethod
    def channel_for(identity_id: str) -> str:
        return f"user_{identity_id}"

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_active(self) -> bool:
        return self._active

    # Handler registration

    def on_message(self, handler: Callable[[Message], None] | None) -> None:
        if self._message_handler is not None and handler is not None:
            self.logger.warning("Replacing the existing new_message handler")
        self._message_handler = handler

    def on_notification(self, handler: Callable[[Notification], None] | None) -> None:
        if self._notification_handler is not None and handler is not None:
            self.logger.warning("Replacing the existing new_notification handler")
        self._notification_handler = handler

    def on_status(self, handler: Callable[[bool], None] | None) -> None:
        self._status_handler = handler

    # Connection lifecycle

    async def connect(self, identity_id: str) -> None:
        if self._active and self.identity_id == identity_id:
            self.logger.debug(f"Already connected for '{identity_id}'")
            return
        if self._active:
            await self.disconnect()

        self.identity_id = identity_id
        self._active = True
        self._listener = asyncio.create_task(
            self._run(identity_id), name=f"push-listener:{identity_id}"
        )

    async def disconnect(self) -> None:
        if not self._active and self._listener is None:
            return
        self._active = False
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        await self._close_connection()
        self._set_connected(False)
        self.logger.info(f"Disconnected push channel for '{self.identity_id}'")
        self.identity_id = None

    async def _open(self, identity_id: str) -> None:
        self.client = self._client_factory()
        await self.client.ping()
        self.pubsub = self.client.pubsub()
        channel = self.channel_for(identity_id)
        await self.pubsub.subscribe(channel)
        await self.client.publish(JOIN_CHANNEL, identity_id)
        self._set_connected(True)
        self.logger.info(f"Subscribed to push channel '{channel}'")

    async def _close_connection(self) -> None:
        pubsub, self.pubsub = self.pubsub, None
        client, self.client = self.client, None
        try:
            if pubsub is not None:
                await pubsub.aclose()
            if client is not None:
                await client.aclose()
        except (redis.RedisError, OSError) as e:
            self.logger.warning(f"Error while closing Redis connection: {str(e)}")

    async def _run(self, identity_id: str) -> None:
        delay = self.initial_delay
        while self._active:
            try:
                await self._open(identity_id)
                delay = self.initial_delay
                await self._listen()
            except (redis.RedisError, OSError) as e:
                self.logger.error(
                    f"Redis connection error: {str(e)}. "
                    f"Attempting to reconnect in {delay} seconds..."
                )
            except Exception as e:
                self.logger.error(
                    f"Unexpected error in push listener: {str(e)}. "
                    f"Attempting to reconnect in {delay} seconds..."
                )

            self._set_connected(False)
            await self._close_connection()
            if not self._active:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_delay)

    async def _listen(self) -> None:
        while self._active:
            frame = await self.pubsub.get_message(
                ignore_subscribe_messages=True, timeout=self.read_timeout
            )
            if frame is None or frame.get("type") != "message":
                continue
            self._dispatch(frame["data"])

    # Inbound events

    def _dispatch(self, data: Any) -> None:
        if not self._active:
            return
        try:
            if isinstance(data, (str, bytes)):
                envelope = PushEnvelope.model_validate_json(data)
            else:
                envelope = PushEnvelope.model_validate(data)
        except ValidationError as e:
            self.logger.error(f"Discarding malformed push frame: {str(e)}")
            return

        match envelope.event:
            case PushEventKind.NEW_MESSAGE:
                mapper, handler = message_mapper, self._message_handler
            case PushEventKind.NEW_NOTIFICATION:
                mapper, handler = notification_mapper, self._notification_handler

        if handler is None:
            self.logger.debug(f"No handler registered for '{envelope.event.value}'")
            return

        try:
            entity = mapper.to_entity(envelope.data)
        except MAPPING_ERRORS as e:
            self.logger.error(
                f"Discarding malformed '{envelope.event.value}' payload: {str(e)}"
            )
            return

        self.logger.info(f"Received '{envelope.event.value}' {entity.id}")
        try:
            handler(entity)
        except Exception as e:
            self.logger.error(
                f"Error in handler for '{envelope.event.value}': {str(e)}"
            )

    def _set_connected(self, connected: bool) -> None:
        if self._connected == connected:
            return
        self._connected = connected
        self.logger.info(f"Connection status changed: {connected}")
        if self._status_handler is not None:
            try:
                self._status_handler(connected)
            except Exception as e:
                self.logger.error(f"Error in connection status handler: {str(e)}")
