"""EVS domain - prepaid meter balance, usage and reminders."""

from .commands import EvsCommands
from .errors import (
    AuthError,
    BackendError,
    BackendsExhaustedError,
    EvsError,
    FailureClass,
    NotAuthorized,
    ParseError,
    StorageError,
    TransportError,
    UnsupportedInLegacyMode,
    classify_failure,
)
from .policy import effective_balance
from .services import EvsClientPool, FallbackEvsClient, LegacyEvsClient, ModernEvsClient
from .storage import EncryptedStorage, UserCreds, UserReminder

__all__ = [
    "EvsCommands",
    "EvsError",
    "AuthError",
    "NotAuthorized",
    "UnsupportedInLegacyMode",
    "ParseError",
    "TransportError",
    "StorageError",
    "BackendError",
    "BackendsExhaustedError",
    "FailureClass",
    "classify_failure",
    "effective_balance",
    "ModernEvsClient",
    "LegacyEvsClient",
    "FallbackEvsClient",
    "EvsClientPool",
    "EncryptedStorage",
    "UserCreds",
    "UserReminder",
]
