from __future__ import annotations

import json
import re
import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authdesk.core.events.redaction import redact

# "<namespace>.<name>", lower case
_EVENT_TYPE_RE = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$")


class EventType(str, Enum):
    CODE_UPDATED = "code.updated"
    STATUS_CHANGED = "status.changed"
    SESSION_REFRESHED = "session.refreshed"
    MANIFEST_CHANGED = "manifest.changed"
    CONFIRMATIONS_BATCH = "confirmations.batch"
    ERROR_RAISED = "error.raised"


# events that make no sense without an owning account
ACCOUNT_SCOPED = {EventType.SESSION_REFRESHED.value}


class EventSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SourceSubsystem(str, Enum):
    orchestrator = "orchestrator"
    time = "time"
    manifest = "manifest"
    sessions = "sessions"
    confirmations = "confirmations"
    providers = "providers"
    ui = "ui"


class BaseEvent(BaseModel):
    """
    One notification towards the presentation layer. Payloads are redacted on
    construction, so secrets never reach a subscriber.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_type: str
    timestamp: float = Field(default_factory=time.time)
    account_name: Optional[str] = None
    source_subsystem: SourceSubsystem
    severity: EventSeverity = EventSeverity.INFO
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type", mode="before")
    @classmethod
    def _dotted_name(cls, v: Any) -> str:
        if isinstance(v, EventType):
            v = v.value
        v = str(v or "").strip()
        if not _EVENT_TYPE_RE.match(v):
            raise ValueError(f"event_type must look like 'namespace.name', got {v!r}")
        return v

    @field_validator("payload")
    @classmethod
    def _redacted_json(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        safe = redact(v)
        try:
            json.dumps(safe, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise ValueError("payload must be JSON-serializable") from e
        return safe

    @model_validator(mode="after")
    def _account_scoped(self) -> "BaseEvent":
        if self.event_type in ACCOUNT_SCOPED and not self.account_name:
            raise ValueError(f"{self.event_type} requires account_name")
        return self

    @property
    def namespace(self) -> str:
        return self.event_type.split(".", 1)[0]
