"""
External Oracles

The registry never owns balances or roles. It asks:
- a BalanceOracle: how much of the asset does this address hold right now?
- an AuthorityOracle: does this address currently hold this role?

Both are queried live on every call that needs them. Implementations
must not memoize answers: a claim has to stop verifying the moment the
underlying balance drops.

Implementations:
- InMemory*: deterministic fakes for tests and local development
- JsonFile*: re-read a JSON snapshot on every query, for deployments
  where an external indexer keeps that file current
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Iterable, Optional

from .signer import Signer


class BalanceOracle(ABC):
    """Read-only source of live asset balances."""

    @abstractmethod
    def balance_of(self, address: str) -> int:
        """Current balance of address; 0 if the address is unknown."""
        pass


class AuthorityOracle(ABC):
    """Read-only source of role membership."""

    @abstractmethod
    def has_role(self, address: str, role: str) -> bool:
        """True if address currently holds role."""
        pass


class InMemoryBalanceOracle(BalanceOracle):
    """Mutable in-process ledger of balances."""

    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._balances: dict[str, int] = {}
        self._lock = Lock()
        for address, amount in (balances or {}).items():
            self.set_balance(address, amount)

    def balance_of(self, address: str) -> int:
        return self._balances.get(address.lower(), 0)

    def set_balance(self, address: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Balance cannot be negative, got {amount}")
        with self._lock:
            self._balances[Signer.normalize_address(address)] = amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Move amount from sender to recipient."""
        if amount < 0:
            raise ValueError(f"Transfer amount cannot be negative, got {amount}")
        sender = Signer.normalize_address(sender)
        recipient = Signer.normalize_address(recipient)
        with self._lock:
            available = self._balances.get(sender, 0)
            if available < amount:
                raise ValueError(
                    f"Transfer of {amount} exceeds balance {available} of {sender}"
                )
            self._balances[sender] = available - amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount


class InMemoryAuthorityOracle(AuthorityOracle):
    """Mutable in-process role table."""

    def __init__(self, roles: Optional[dict[str, Iterable[str]]] = None):
        self._roles: dict[str, set[str]] = {}
        self._lock = Lock()
        for role, members in (roles or {}).items():
            for address in members:
                self.grant_role(address, role)

    def has_role(self, address: str, role: str) -> bool:
        return address.lower() in self._roles.get(role, set())

    def grant_role(self, address: str, role: str) -> None:
        with self._lock:
            self._roles.setdefault(role, set()).add(Signer.normalize_address(address))

    def revoke_role(self, address: str, role: str) -> None:
        with self._lock:
            self._roles.get(role, set()).discard(address.lower())


class OracleError(Exception):
    """
    Raised when an oracle cannot give a trustworthy answer.

    Covers a missing or unreadable source file and values that are not
    valid balances or role lists. Callers must not read this as a zero
    balance: the API answers 503 and no registration is recorded.
    """
    pass


def _read_json(path: Path) -> dict:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise OracleError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise OracleError(f"{path} must contain a JSON object, got {type(data).__name__}")
    return data


def _parse_balance(raw, address: str, path: Path) -> int:
    """A balance is a non-negative JSON integer or a string of decimal digits."""
    if isinstance(raw, int) and not isinstance(raw, bool):
        value = raw
    elif isinstance(raw, str) and raw.isascii() and raw.isdigit():
        value = int(raw)
    else:
        raise OracleError(
            f"Invalid balance {raw!r} for {address} in {path}: "
            "expected a non-negative integer or a string of decimal digits"
        )
    if value < 0:
        raise OracleError(f"Invalid balance {raw!r} for {address} in {path}: negative")
    return value


class JsonFileBalanceOracle(BalanceOracle):
    """
    Balances from a JSON object of address -> amount.

    Amounts may be JSON integers or decimal strings (for values beyond
    what other producers can emit as numbers). The file is re-read on
    every query. Floats, booleans and negative values are rejected with
    OracleError, as is a missing or half-written file.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def balance_of(self, address: str) -> int:
        balances = {k.lower(): v for k, v in _read_json(self.path).items()}
        address = address.lower()
        if address not in balances:
            return 0
        return _parse_balance(balances[address], address, self.path)


class JsonFileAuthorityOracle(AuthorityOracle):
    """
    Role membership from a JSON object of role -> [addresses].

    The file is re-read on every query.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def has_role(self, address: str, role: str) -> bool:
        members = _read_json(self.path).get(role, [])
        if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
            raise OracleError(f"Role '{role}' in {self.path} must be a list of addresses")
        return address.lower() in {m.lower() for m in members}
