"""Request-scoped failures of the login and profile pipeline."""

from enum import Enum
from typing import Any, Optional


class BattleNetAuthError(Exception):
    """Base class for request-scoped authentication failures."""


class CsrfStateInvalid(BattleNetAuthError):
    """The callback state was never issued, already used, expired or wrong."""


class ProviderError(BattleNetAuthError):
    """A provider call failed; carries the raw payload for server-side logs."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ExchangeFailed(ProviderError):
    """The provider rejected the authorization code or client credentials."""


class PrimaryFetchFailed(ProviderError):
    """The account profile could not be fetched."""


class VerificationReason(str, Enum):
    MISSING = "missing"
    MALFORMED = "malformed"
    SIGNATURE = "signature"
    EXPIRED = "expired"
    UNKNOWN_SESSION = "unknown_session"


class CredentialInvalid(BattleNetAuthError):
    """A caller credential failed verification."""

    def __init__(self, reason: VerificationReason):
        super().__init__(f"Credential rejected: {reason.value}")
        self.reason = reason
