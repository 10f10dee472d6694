# support_sync/domain/events.py
from enum import Enum
from typing import Any

from pydantic import BaseModel

from support_sync.config import FeatureConfig
from support_sync.domain.entities import Identity


class Event(BaseModel):
    pass


class FeatureConfigChanged(Event):
    config: FeatureConfig
    previous: FeatureConfig


class SessionStarted(Event):
    identity: Identity


class SessionStopped(Event):
    identity_id: str


class PushEventKind(str, Enum):
    NEW_MESSAGE = "new_message"
    NEW_NOTIFICATION = "new_notification"


class PushEnvelope(BaseModel):
    event: PushEventKind
    data: dict[str, Any]
