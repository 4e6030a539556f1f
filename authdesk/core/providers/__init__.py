from authdesk.core.providers.base import (
    ConfirmationAction,
    ConfirmationProof,
    CredentialProvider,
    DeactivationScheme,
    PendingConfirmation,
)
from authdesk.core.providers.registry import ProviderContext, ProviderRegistry, default_registry
from authdesk.core.providers.steam import SteamGuardProvider, SteamTransport, confirmation_key
from authdesk.core.providers.totp import TotpProvider

__all__ = [
    "ConfirmationAction",
    "ConfirmationProof",
    "CredentialProvider",
    "DeactivationScheme",
    "PendingConfirmation",
    "ProviderContext",
    "ProviderRegistry",
    "default_registry",
    "SteamGuardProvider",
    "SteamTransport",
    "confirmation_key",
    "TotpProvider",
]
