"""
Registry Configuration

Fixed once at construction and read-only for the life of a
RegistryService. Nothing in the registry rotates these values; who holds
the facilitator role is decided by the external authority oracle.

Environment Variables:
    HOLDREG_FACILITATOR_ROLE: Role identifier whose holders may register
        on behalf of others (required in production)
    HOLDREG_BALANCES_PATH: JSON file of address -> balance (file-backed oracle)
    HOLDREG_ROLES_PATH: JSON file of role -> [addresses] (file-backed oracle)
    HOLDREG_REQUEST_MAX_AGE: Seconds an API command's issued_at stays valid
        (default 300)
    HOLDREG_PRODUCTION: Enable production mode
"""

import os
from dataclasses import dataclass
from typing import Optional

from .observability import get_logger, is_production

logger = get_logger(__name__)

DEFAULT_FACILITATOR_ROLE = "facilitator"


@dataclass(frozen=True)
class RegistryConfig:
    """Immutable registry configuration."""
    facilitator_role: str = DEFAULT_FACILITATOR_ROLE
    balances_path: Optional[str] = None
    roles_path: Optional[str] = None
    request_max_age_seconds: int = 300

    def __post_init__(self):
        if not self.facilitator_role:
            raise ValueError("facilitator_role must be a non-empty role identifier")
        if self.request_max_age_seconds <= 0:
            raise ValueError("request_max_age_seconds must be positive")

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        """
        Load configuration from environment variables.

        Raises:
            RuntimeError: In production, if no facilitator role is configured
        """
        role = os.getenv("HOLDREG_FACILITATOR_ROLE", "")

        if not role:
            if is_production():
                raise RuntimeError(
                    "HOLDREG_FACILITATOR_ROLE must be set in production."
                )
            logger.warning(
                "Facilitator role not configured, using development default",
                facilitator_role=DEFAULT_FACILITATOR_ROLE,
            )
            role = DEFAULT_FACILITATOR_ROLE

        return cls(
            facilitator_role=role,
            balances_path=os.getenv("HOLDREG_BALANCES_PATH") or None,
            roles_path=os.getenv("HOLDREG_ROLES_PATH") or None,
            request_max_age_seconds=int(os.getenv("HOLDREG_REQUEST_MAX_AGE", "300")),
        )
