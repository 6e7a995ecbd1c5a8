"""Static Procore integration constants.

Environment-specific values (client id/secret, sandbox flag, timeouts) live
in src.shield.config.Settings; this module only holds what never changes
between deployments.
"""

from __future__ import annotations

PROVIDER = "procore"

PROCORE_URLS: dict[str, dict[str, str]] = {
    "production": {
        "api": "https://api.procore.com",
        "auth": "https://login.procore.com",
    },
    "sandbox": {
        "api": "https://sandbox.procore.com",
        "auth": "https://login-sandbox.procore.com",
    },
}

# REST v1.0 resource paths (company-scoped via the Procore-Company-Id header)
API_PREFIX = "/rest/v1.0"
TOKEN_PATH = "/oauth/token"

# Transient-failure retry policy, distinct from the single token-refresh retry
MAX_TRANSIENT_ATTEMPTS = 3
BACKOFF_MIN_SECONDS = 1
BACKOFF_MAX_SECONDS = 10

# Custom fields written on the vendor record after each compliance push
COMPLIANCE_CUSTOM_FIELDS = (
    "shield_compliance_status",
    "shield_last_verified",
    "shield_verification_id",
)

AUSTRALIAN_STATE_CODES = frozenset(
    {"NSW", "VIC", "QLD", "WA", "SA", "TAS", "ACT", "NT"}
)


def is_australian_state_code(code: str | None) -> bool:
    """Return True for the eight Australian state/territory codes."""
    return bool(code) and code in AUSTRALIAN_STATE_CODES
