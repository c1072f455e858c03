"""
Registry assembly from the environment.

Shared by the API (holdreg.main) and the management CLI (holdreg.manage).

Store selection: see holdreg.db.config (REGISTRY_STORE_DRIVER, DATABASE_URL).
Oracle selection:
- HOLDREG_BALANCES_PATH and HOLDREG_ROLES_PATH set: JSON file oracles
- Neither set: empty in-memory oracles (development only)
"""

from .config import RegistryConfig
from .core import (
    AuthorityOracle,
    BalanceOracle,
    InMemoryAuthorityOracle,
    InMemoryBalanceOracle,
    JsonFileAuthorityOracle,
    JsonFileBalanceOracle,
    RegistryService,
)
from .db import create_store
from .observability import get_logger, is_production

logger = get_logger(__name__)


def create_oracles(config: RegistryConfig) -> tuple[BalanceOracle, AuthorityOracle]:
    """
    File-backed oracles when paths are configured, in-memory otherwise.

    In-memory oracles start empty: every balance is 0 and nobody holds
    the facilitator role.
    """
    if config.balances_path and config.roles_path:
        return (
            JsonFileBalanceOracle(config.balances_path),
            JsonFileAuthorityOracle(config.roles_path),
        )

    if config.balances_path or config.roles_path:
        raise RuntimeError(
            "HOLDREG_BALANCES_PATH and HOLDREG_ROLES_PATH must be set together."
        )

    if is_production():
        raise RuntimeError(
            "HOLDREG_BALANCES_PATH and HOLDREG_ROLES_PATH must be set in production."
        )

    logger.warning("Oracle files not configured, using empty in-memory oracles")
    return InMemoryBalanceOracle(), InMemoryAuthorityOracle()


def build_registry_from_env(verify: bool = True) -> RegistryService:
    """
    Assemble a RegistryService from environment configuration.

    Raises:
        ChainError: If verify is set and the stored audit log is tampered
    """
    config = RegistryConfig.from_env()
    balance_oracle, authority_oracle = create_oracles(config)
    store = create_store()

    return RegistryService.load_from_store(
        store,
        config=config,
        balance_oracle=balance_oracle,
        authority_oracle=authority_oracle,
        verify=verify,
    )
