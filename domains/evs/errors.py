"""EVS error taxonomy and failure classification.

Every error carries two messages:
- ``str(error)``: operator detail, written to the log
- ``error.user_message``: short and non-technical, safe to show in chat

Neither ever contains a password.
"""

from enum import Enum

from .config import LEGACY_FALLBACK_PHRASES


class EvsError(Exception):
    """Base class for all EVS portal errors."""

    user_message = "couldn't reach the meter portal, try again later"

    def __init__(self, message: str, user_message: str | None = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class AuthError(EvsError):
    """Login rejected by a backend. Message is the backend's own wording."""

    user_message = "login failed, check your username and password"


class NotAuthorized(EvsError):
    """An authenticated call was rejected (HTTP 403 or equivalent)."""

    user_message = "the portal doesn't allow this for your account"


class UnsupportedInLegacyMode(EvsError):
    """Usage / rank / meter data requested for a legacy-portal account."""

    user_message = "not available for your account (the old portal only shows balance)"


class ParseError(EvsError):
    """Backend response did not have the expected shape."""

    user_message = "the portal sent something unexpected, try again later"


class TransportError(EvsError):
    """Network failure or timeout."""

    user_message = "the portal isn't responding, try again later"


class BackendError(EvsError):
    """Non-auth HTTP failure or an explicit error reported in the response body."""

    def __init__(self, message: str, status_code: int | None = None, user_message: str | None = None):
        super().__init__(message, user_message)
        self.status_code = status_code


class StorageError(EvsError):
    """Encryption, decryption or filesystem failure in the persistent store."""

    user_message = "couldn't save your settings, ask the bot owner to check the logs"


class BackendsExhaustedError(AuthError):
    """Both the modern and the legacy backend failed for the same request."""

    def __init__(self, what: str, modern_error: Exception, legacy_error: Exception):
        super().__init__(
            f"{what} failed on both backends. Modern: {modern_error}. Legacy: {legacy_error}"
        )
        self.modern_error = modern_error
        self.legacy_error = legacy_error
        if isinstance(legacy_error, EvsError):
            self.user_message = legacy_error.user_message


class FailureClass(Enum):
    """What a caller may do after a backend failure."""
    RETRYABLE_AS_LEGACY = "retryable_as_legacy"  # modern API categorically unavailable for this account
    FATAL = "fatal"                              # propagate, don't try the other backend
    TRANSIENT = "transient"                      # network trouble, caller may retry later


def is_auth_failure(error: BaseException) -> bool:
    """True for a 403 / "not authorized" signal, whatever its type."""
    if isinstance(error, NotAuthorized):
        return True
    message = str(error).lower()
    return "403" in message or "not authorized" in message


def classify_failure(error: BaseException) -> FailureClass:
    """Map an error onto the fallback decision.

    Only login/authorization rejections matching LEGACY_FALLBACK_PHRASES are
    retryable on the legacy backend. A plain bad password stays FATAL.
    """
    if isinstance(error, TransportError):
        return FailureClass.TRANSIENT
    if isinstance(error, (AuthError, NotAuthorized)):
        message = str(error).lower()
        if any(phrase in message for phrase in LEGACY_FALLBACK_PHRASES):
            return FailureClass.RETRYABLE_AS_LEGACY
    return FailureClass.FATAL
