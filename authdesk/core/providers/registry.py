from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from authdesk.core.errors import AccountImportError
from authdesk.core.manifest.models import AccountEntry
from authdesk.core.providers.base import CredentialProvider
from authdesk.core.providers.steam import SteamGuardProvider, SteamTransport
from authdesk.core.providers.totp import TotpProvider


@dataclass
class ProviderContext:
    clock: Optional[Callable[[], int]] = None
    steam_transport: Optional[SteamTransport] = None


ProviderFactory = Callable[[AccountEntry, ProviderContext], CredentialProvider]


class ProviderRegistry:
    """Maps an entry's kind to the factory that builds its provider."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._factories: Dict[str, ProviderFactory] = {}

    def register(self, kind: str, factory: ProviderFactory) -> None:
        kind = str(kind or "").strip().lower()
        if not kind:
            raise ValueError("kind required")
        with self._lock:
            self._factories[kind] = factory

    def kinds(self) -> List[str]:
        with self._lock:
            return sorted(self._factories)

    def create(self, entry: AccountEntry, ctx: Optional[ProviderContext] = None) -> CredentialProvider:
        with self._lock:
            factory = self._factories.get(entry.kind)
        if factory is None:
            raise AccountImportError("Unknown account kind.", kind=entry.kind, account_name=entry.account_name)
        return factory(entry, ctx or ProviderContext())


def _steam(entry: AccountEntry, ctx: ProviderContext) -> CredentialProvider:
    return SteamGuardProvider(entry.account_name, entry.payload, clock=ctx.clock, transport=ctx.steam_transport)


def _totp(entry: AccountEntry, ctx: ProviderContext) -> CredentialProvider:
    return TotpProvider(entry.account_name, entry.payload, clock=ctx.clock)


def default_registry() -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register(SteamGuardProvider.kind, _steam)
    reg.register(TotpProvider.kind, _totp)
    return reg
