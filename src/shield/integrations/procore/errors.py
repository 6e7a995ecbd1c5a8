"""Error taxonomy for the Procore integration.

Every error carries an HTTP-equivalent status code and a stable machine code
so thin request handlers can render it without knowing the subclass. Only
ProcoreUnauthorized and ProcoreTransientError are recovered internally (by
the token refresh coordinator and the client's tenacity retry respectively);
the rest surface to the caller.
"""

from __future__ import annotations


class ProcoreError(Exception):
    """Base class for integration errors surfaced to callers."""

    status_code: int = 500
    code: str = "PROCORE_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotConnected(ProcoreError):
    """No OAuth connection exists for the company."""

    status_code = 404
    code = "PROCORE_NOT_CONNECTED"

    def __init__(self, message: str = "Procore not connected. Please connect first.") -> None:
        super().__init__(message)


class PendingCompanySelection(ProcoreError):
    """The connection exists but no Procore company has been selected yet."""

    status_code = 400
    code = "PROCORE_COMPANY_SELECTION_REQUIRED"

    def __init__(self, message: str = "Please select a Procore company first.") -> None:
        super().__init__(message)


class ProcoreUnauthorized(ProcoreError):
    """Procore rejected the access token (HTTP 401)."""

    status_code = 401
    code = "PROCORE_UNAUTHORIZED"


class ReauthorizationRequired(ProcoreError):
    """Token refresh failed; the user must reconnect Procore."""

    status_code = 401
    code = "PROCORE_REAUTHORIZATION_REQUIRED"


class TokenRefreshFailed(ProcoreError):
    """The OAuth token endpoint refused the refresh token."""

    status_code = 401
    code = "PROCORE_TOKEN_REFRESH_FAILED"


class NotFound(ProcoreError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationError(ProcoreError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ProcoreAPIError(ProcoreError):
    """Non-auth, non-transient failure returned by the Procore API."""

    status_code = 502
    code = "PROCORE_API_ERROR"

    def __init__(self, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class ProcoreTransientError(ProcoreAPIError):
    """Rate-limited (429) or server-side (5xx) failure; safe to retry."""

    code = "PROCORE_TRANSIENT_ERROR"
