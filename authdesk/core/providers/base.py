from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class DeactivationScheme(IntEnum):
    NONE = 0
    SCHEME_1 = 1
    SCHEME_2 = 2


class ConfirmationAction(str, Enum):
    ACCEPT = "accept"
    DENY = "deny"


class PendingConfirmation(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    nonce: str = ""
    description: str = ""
    type: str = "other"
    account_name: str

    def to_public(self) -> Dict[str, Any]:
        return {"account_name": self.account_name, "id": self.id, "description": self.description, "type": self.type}


@dataclass(frozen=True)
class ConfirmationProof:
    timestamp: int
    key: str


class CredentialProvider(ABC):
    """
    One account's authentication, session and confirmation protocol.

    Any network-facing method may raise InvalidSessionError; callers treat that
    as a per-account condition.
    """

    kind: str = "base"
    # seconds each generated code stays valid
    period: int = 30

    def __init__(self, account_name: str, *, clock: Optional[Callable[[], int]] = None):
        self.account_name = account_name
        self.clock = clock

    @abstractmethod
    def generate_code(self, timestamp: int) -> str: ...

    @abstractmethod
    def refresh_session(self) -> bool: ...

    @abstractmethod
    def fetch_pending_confirmations(self) -> List[PendingConfirmation]: ...

    @abstractmethod
    def respond_to_confirmation(self, confirmation: PendingConfirmation, action: ConfirmationAction, proof: Optional[ConfirmationProof]) -> bool: ...

    @abstractmethod
    def deactivate(self, scheme: DeactivationScheme) -> bool: ...

    @abstractmethod
    def export_payload(self) -> Dict[str, Any]: ...

    def make_proof(self, action: ConfirmationAction, timestamp: int) -> Optional[ConfirmationProof]:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.account_name!r}>"
