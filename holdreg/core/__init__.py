# Core registry services
from .hasher import Hasher, CanonicalSerializationError
from .signer import Signer
from .oracles import (
    BalanceOracle,
    AuthorityOracle,
    InMemoryBalanceOracle,
    InMemoryAuthorityOracle,
    JsonFileBalanceOracle,
    JsonFileAuthorityOracle,
    OracleError,
)
from .registry import (
    RegistryService,
    RegistryError,
    ValidationError,
    InsufficientBalanceError,
    UnauthorizedError,
    InvalidSignatureError,
    ChainError,
)

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "BalanceOracle",
    "AuthorityOracle",
    "InMemoryBalanceOracle",
    "InMemoryAuthorityOracle",
    "JsonFileBalanceOracle",
    "JsonFileAuthorityOracle",
    "OracleError",
    "RegistryService",
    "RegistryError",
    "ValidationError",
    "InsufficientBalanceError",
    "UnauthorizedError",
    "InvalidSignatureError",
    "ChainError",
]
