"""
Foresight Security Utilities

Role-based model access and PII redaction applied before any payload
leaves the engine (integration bridge exports, status dumps).
"""

import hashlib
from typing import Any

import structlog

from core.config import get_settings
from core.errors import AccessDeniedError

logger = structlog.get_logger()

DENIED_ROLES = frozenset({"guest"})

# Exact keys whose values are replaced by a salted pseudonym, so joins on the
# same value still line up downstream without exposing it.
PSEUDONYMIZED_FIELDS = frozenset(
    {
        "email",
        "phone",
        "phone_number",
        "national_id",
        "customer_name",
        "representative_name",
        "address",
        "iban",
        "card_number",
        "ip_address",
    }
)

# Key fragments whose values are dropped entirely.
REDACTED_KEY_FRAGMENTS = ("password", "secret", "token", "api_key")
REDACTED = "[REDACTED]"


def pseudonymize(value: Any, salt: str) -> str:
    digest = hashlib.sha256(f"{salt}:{value}".encode()).hexdigest()
    return f"anon:{digest[:12]}"


class SecurityWrapper:
    """Access control + redaction rule set for the forecasting engine."""

    def __init__(self, salt: str | None = None):
        self.salt = salt if salt is not None else get_settings().redaction_salt
        self.denied_count = 0
        self.masked_fields = 0

    def enforce_access(self, model_version: str, role: str | None = None) -> bool:
        """Guests never reach forecast models; every other role passes."""
        if role is not None and role.strip().lower() in DENIED_ROLES:
            self.denied_count += 1
            logger.warning("security.access_denied", role=role, model_version=model_version)
            raise AccessDeniedError(role, model_version)
        return True

    def mask_sensitive(self, record: Any) -> Any:
        """Return a redacted copy of ``record``; the input is left untouched."""
        if isinstance(record, dict):
            masked: dict[Any, Any] = {}
            for key, value in record.items():
                lowered = str(key).lower()
                if any(fragment in lowered for fragment in REDACTED_KEY_FRAGMENTS):
                    masked[key] = REDACTED
                    self.masked_fields += 1
                elif lowered in PSEUDONYMIZED_FIELDS and value is not None:
                    masked[key] = pseudonymize(value, self.salt)
                    self.masked_fields += 1
                else:
                    masked[key] = self.mask_sensitive(value)
            return masked
        if isinstance(record, (list, tuple)):
            return type(record)(self.mask_sensitive(item) for item in record)
        return record

    def get_status(self) -> dict[str, Any]:
        return {
            "policies": ["role_based_access", "pii_pseudonymization", "secret_redaction"],
            "denied_roles": sorted(DENIED_ROLES),
            "pii_masking": True,
            "denied_count": self.denied_count,
            "masked_fields": self.masked_fields,
        }
