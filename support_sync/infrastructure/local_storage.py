# support_sync/infrastructure/local_storage.py
import json
import logging
from collections.abc import Iterable
from typing import Any

import keyring
import keyring.errors
from pydantic import ValidationError

from support_sync.config import FeatureConfig
from support_sync.infrastructure.logger import get_logger


class KeyringStorage:
    """
    JSON values kept in the OS keyring under a single service name.

    The keyring is shared by every session of the same OS user, which makes it
    the client-side equivalent of browser local storage for this library.
    """

    def __init__(self, service: str, logger: logging.Logger | None = None):
        self.service = service
        self.logger = logger or get_logger("KeyringStorage")

    def get_json(self, key: str, default: Any = None) -> Any:
        try:
            raw = keyring.get_password(self.service, key)
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Error reading '{key}' from secure storage: {str(e)}")
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warning(f"Invalid JSON stored under '{key}', ignoring")
            return default

    def set_json(self, key: str, value: Any) -> bool:
        try:
            keyring.set_password(self.service, key, json.dumps(value))
            return True
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Error storing '{key}' in secure storage: {str(e)}")
            return False

    def delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.service, key)
        except keyring.errors.PasswordDeleteError:
            pass  # Nothing stored
        except keyring.errors.KeyringError as e:
            self.logger.error(f"Error removing '{key}' from secure storage: {str(e)}")


class SurfacedRegistry:
    """
    Durable set of notification ids already shown to an identity.

    Lifecycle: ``load`` at session start, ``add`` writes through on every newly
    surfaced id, ``close`` drops the in-memory copy at logout. Stored ids are
    only removed by an explicit ``reset``. Writes merge with whatever another
    session stored in the meantime (set union), so no locking is needed.
    """

    def __init__(self, storage: KeyringStorage):
        self.storage = storage
        self.identity_id: str | None = None
        self._ids: set[str] = set()

    @staticmethod
    def storage_key(identity_id: str) -> str:
        return f"surfaced_notifications_{identity_id}"

    def load(self, identity_id: str) -> set[str]:
        self.identity_id = identity_id
        stored = self.storage.get_json(self.storage_key(identity_id), [])
        self._ids = {str(item) for item in stored} if isinstance(stored, list) else set()
        self.storage.logger.info(
            f"Loaded {len(self._ids)} surfaced notification ids for '{identity_id}'"
        )
        return set(self._ids)

    def __contains__(self, notification_id: str) -> bool:
        return notification_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, notification_ids: Iterable[str]) -> None:
        if self.identity_id is None:
            return
        new_ids = set(notification_ids) - self._ids
        if not new_ids:
            return
        key = self.storage_key(self.identity_id)
        stored = self.storage.get_json(key, [])
        if isinstance(stored, list):
            self._ids.update(str(item) for item in stored)
        self._ids.update(new_ids)
        self.storage.set_json(key, sorted(self._ids))

    def reset(self) -> None:
        if self.identity_id is not None:
            self.storage.delete(self.storage_key(self.identity_id))
        self._ids.clear()

    def close(self) -> None:
        self.identity_id = None
        self._ids = set()


class FeatureConfigStore:
    KEY = "feature_config"

    def __init__(self, storage: KeyringStorage):
        self.storage = storage

    def load(self, defaults: FeatureConfig) -> FeatureConfig:
        stored = self.storage.get_json(self.KEY)
        if not isinstance(stored, dict):
            return defaults
        try:
            return FeatureConfig.model_validate({**defaults.model_dump(), **stored})
        except ValidationError as e:
            self.storage.logger.warning(f"Ignoring invalid stored feature config: {str(e)}")
            return defaults

    def save(self, config: FeatureConfig) -> None:
        self.storage.set_json(self.KEY, config.model_dump())

    def clear(self) -> None:
        self.storage.delete(self.KEY)
