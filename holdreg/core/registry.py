"""
Registry Service - Registration and Verification

An actor claims to hold some amount of an asset. The registry stores
that claim and, whenever asked, checks it against the actor's live
balance.

Rules (enforced in code):
- One claimed amount per actor; a new registration replaces the old one
- A claim is only accepted if the live balance covers it
- Anyone may register for themselves
- Only holders of the facilitator role may register for someone else,
  and only with the actor's signature over the attestation message
- Delegated checks run in a fixed order: authority, then signature,
  then balance. An unauthorized caller never reaches signature recovery.
- A verified amount is the claim if the live balance still covers it,
  otherwise 0. Nothing is cached.

KNOWN LIMITATION:
The actor's signature covers the attestation message, not the amount.
The facilitator chooses the amount (up to the actor's live balance) and
is trusted to do so because they hold the facilitator role. Binding the
amount needs a typed-data signature format; until then this split is
deliberate and tested.

ARCHITECTURE NOTE:
- RegistryService: business rules, signature and authority checks
- RegistryStore: atomic claim write + audit append, write serialization
- Oracles: balances and roles, always queried live
"""

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional
from uuid import uuid4

from ..config import RegistryConfig
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import (
    Eligibility,
    EventType,
    HoldingRegisteredPayload,
    HoldingStatus,
    RegistryEvent,
)
from .hasher import Hasher
from .oracles import AuthorityOracle, BalanceOracle
from .signer import Signer

if TYPE_CHECKING:
    from ..db.store import RegistryStore

logger = get_logger(__name__)

# (signer, message, signature) -> authored?
SignatureVerifier = Callable[[str, str, str], bool]

# Largest amount the durable store can hold (NUMERIC(78, 0))
MAX_AMOUNT = 10**78 - 1


class RegistryError(Exception):
    """Base exception for registry errors."""
    reason = "registry_error"


class ValidationError(RegistryError):
    """Raised when a registration request is malformed."""
    reason = "invalid_request"


class InsufficientBalanceError(RegistryError):
    """Raised when the claimed amount exceeds the actor's live balance."""
    reason = "insufficient_balance"

    def __init__(self, actor: str, amount: int, balance: int):
        self.actor = actor
        self.amount = amount
        self.balance = balance
        super().__init__(
            f"Claimed amount {amount} exceeds live balance {balance} of {actor}"
        )


class UnauthorizedError(RegistryError):
    """Raised when the caller does not hold the facilitator role."""
    reason = "unauthorized"

    def __init__(self, caller: str, role: str):
        self.caller = caller
        self.role = role
        super().__init__(
            f"{caller} does not hold role '{role}' and cannot register for others"
        )


class InvalidSignatureError(RegistryError):
    """Raised when the attestation signature was not made by the actor."""
    reason = "invalid_signature"

    def __init__(self, actor: str):
        self.actor = actor
        super().__init__(
            f"Signature does not prove {actor} authored the attestation message"
        )


class ChainError(RegistryError):
    """Raised when the audit log's integrity is compromised."""
    reason = "chain_error"


class RegistryService:
    """
    The holding registry.

    Both registration paths funnel into _record, the only code that
    writes to the store. Queries never write.

    CONCURRENCY GUARANTEES (with RegistryStore):
    - The balance check, claim write and audit append run inside one
      store transaction holding the store's single write lock
    - A failure anywhere inside that transaction leaves no trace
    - Authority and signature checks touch no state and run before the
      transaction opens
    """

    def __init__(
        self,
        config: RegistryConfig,
        balance_oracle: BalanceOracle,
        authority_oracle: AuthorityOracle,
        store: Optional["RegistryStore"] = None,
        verify_signature: SignatureVerifier = Signer.verify_personal_message,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            config: Immutable configuration (facilitator role)
            balance_oracle: Live balance source
            authority_oracle: Live role membership source
            store: RegistryStore; an InMemoryRegistryStore if None
            verify_signature: Attestation check, (signer, message, signature) -> bool
            metrics: MetricsCollector; the process-wide one if None
        """
        self._config = config
        self._balance_oracle = balance_oracle
        self._authority_oracle = authority_oracle
        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryRegistryStore
            store = InMemoryRegistryStore()
        self._store = store
        self._verify_signature = verify_signature
        self._metrics = metrics if metrics is not None else get_metrics()

    @property
    def config(self) -> RegistryConfig:
        return self._config

    @property
    def store(self) -> "RegistryStore":
        return self._store

    @property
    def event_count(self) -> int:
        return self._store.get_event_count()

    # ================================================================
    # INPUT VALIDATION
    # ================================================================

    @staticmethod
    def _validate_address(value: str, field_name: str) -> str:
        try:
            return Signer.normalize_address(value)
        except ValueError as e:
            raise ValidationError(f"{field_name}: {e}") from None

    @staticmethod
    def _validate_amount(amount: int) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(
                f"amount must be an integer, got {type(amount).__name__}"
            )
        if amount < 0:
            raise ValidationError(f"amount must be non-negative, got {amount}")
        if amount > MAX_AMOUNT:
            raise ValidationError(f"amount must be at most {MAX_AMOUNT}, got {amount}")
        return amount

    @staticmethod
    def _validate_message(message: str) -> str:
        if not isinstance(message, str):
            raise ValidationError(
                f"message must be a string, got {type(message).__name__}"
            )
        return message

    def _reject(self, error: RegistryError, **fields) -> RegistryError:
        """Log and count a rejected registration, then hand the error back to raise."""
        self._metrics.record_rejection(error.reason)
        logger.warning("Registration rejected", reason=error.reason, error=str(error), **fields)
        return error

    # ================================================================
    # REGISTRATION
    # ================================================================

    def register(self, caller: str, amount: int, message: str) -> RegistryEvent:
        """
        Self-registration: caller claims amount for themselves.

        Raises:
            ValidationError: Malformed caller, amount or message
            InsufficientBalanceError: caller's live balance is below amount
        """
        try:
            caller = self._validate_address(caller, "caller")
            amount = self._validate_amount(amount)
            message = self._validate_message(message)
        except ValidationError as e:
            raise self._reject(e) from None

        return self._record(
            actor=caller,
            amount=amount,
            message=message,
            registered_by=caller,
            delegated=False,
        )

    def register_for(
        self,
        caller: str,
        actor: str,
        amount: int,
        message: str,
        signature: str,
    ) -> RegistryEvent:
        """
        Delegated registration: a facilitator registers a claim for actor.

        Check order is fixed: authority, then signature, then balance.
        Each step only runs if the previous one passed.

        Raises:
            ValidationError: Malformed caller, actor, amount or message
            UnauthorizedError: caller does not hold the facilitator role
            InvalidSignatureError: signature is not actor's over message
            InsufficientBalanceError: actor's live balance is below amount
        """
        try:
            caller = self._validate_address(caller, "caller")
            actor = self._validate_address(actor, "actor")
            amount = self._validate_amount(amount)
            message = self._validate_message(message)
        except ValidationError as e:
            raise self._reject(e) from None

        role = self._config.facilitator_role
        if not self._authority_oracle.has_role(caller, role):
            raise self._reject(UnauthorizedError(caller, role), caller=caller, actor=actor)

        if not self._verify_signature(actor, message, signature):
            raise self._reject(InvalidSignatureError(actor), caller=caller, actor=actor)

        return self._record(
            actor=actor,
            amount=amount,
            message=message,
            registered_by=caller,
            delegated=True,
        )

    def _record(
        self,
        actor: str,
        amount: int,
        message: str,
        registered_by: str,
        delegated: bool,
    ) -> RegistryEvent:
        """
        Store actor -> amount and append the audit record, or do nothing.

        The single write path. Flow inside one store transaction:
        1. Read actor's live balance; reject if below amount
        2. Build the payload and chain it onto the locked head
        3. Commit claim + event together
        """
        start = time.perf_counter()

        with self._store.begin_record() as ctx:
            balance = self._balance_oracle.balance_of(actor)
            if balance < amount:
                raise self._reject(
                    InsufficientBalanceError(actor, amount, balance),
                    actor=actor,
                    registered_by=registered_by,
                )

            payload = HoldingRegisteredPayload(
                actor=actor,
                amount=amount,
                message=message,
                registered_by=registered_by,
                delegated=delegated,
            ).model_dump()

            head = ctx.head
            if head.next_sequence == 0:
                previous_hash = None
            elif head.last_event_hash is None:
                raise ChainError(
                    f"Cannot create event with sequence {head.next_sequence}: "
                    "previous event hash is missing but this is not genesis"
                )
            else:
                previous_hash = head.last_event_hash

            event = RegistryEvent(
                event_id=uuid4(),
                sequence_number=head.next_sequence,
                event_type=EventType.HOLDING_REGISTERED,
                actor=actor,
                payload=payload,
                previous_event_hash=previous_hash,
                event_hash=Hasher.hash_event(payload, previous_hash),
                created_at=datetime.now(timezone.utc),
            )
            event.validate_chain_rules()

            ctx.commit(event, Hasher.canonicalize(payload), Hasher.SERIALIZATION_VERSION)

        latency_ms = (time.perf_counter() - start) * 1000
        self._metrics.record_registration(latency_ms, delegated=delegated)
        logger.info(
            "Holding registered",
            actor=actor,
            amount=amount,
            registered_by=registered_by,
            delegated=delegated,
            sequence_number=event.sequence_number,
        )
        return event

    # ================================================================
    # VERIFICATION QUERIES
    # Pure reads. Unknown or malformed actors simply come back as 0.
    # ================================================================

    def claimed_amount(self, actor: str) -> int:
        """Last successfully registered amount, 0 if none."""
        return self._store.get_claim(actor.lower())

    def verified_amount(self, actor: str) -> int:
        """
        The claim if the actor's live balance still covers it, else 0.

        The balance is fetched on every call, so the answer can drop to 0
        at any moment without any registry event.
        """
        return self.holding_status(actor).verified_amount

    def holding_status(self, actor: str) -> HoldingStatus:
        """Claim, live balance and verified amount in one consistent read."""
        actor = actor.lower()
        claimed = self._store.get_claim(actor)
        balance = self._balance_oracle.balance_of(actor)
        self._metrics.record_verification()
        return HoldingStatus(
            actor=actor,
            claimed_amount=claimed,
            balance=balance,
            verified_amount=claimed if balance >= claimed else 0,
        )

    def eligibility(self, actor: str) -> Eligibility:
        """
        (eligible, standing) for the external role-eligibility protocol.

        standing is always True; eligible means a non-zero verified amount.
        """
        return Eligibility(eligible=self.verified_amount(actor) > 0, standing=True)

    # ================================================================
    # AUDIT LOG
    # ================================================================

    def get_events(self) -> list[RegistryEvent]:
        return self._store.list_all()

    def get_events_for_actor(self, actor: str) -> list[RegistryEvent]:
        return self._store.list_for_actor(actor.lower())

    def verify_chain_integrity(self) -> bool:
        """
        Recompute every event hash and link, and check the claims
        table against the log. Both are read from one store snapshot.

        This should be run periodically as a health check.
        """
        try:
            events, claims = self._store.snapshot()
            self._verify_event_chain(events)
            self._verify_claims_match_log(events, claims)
        except ChainError as e:
            logger.error("Audit chain verification failed", error=str(e))
            return False
        return True

    @classmethod
    def load_from_store(
        cls,
        store: "RegistryStore",
        config: RegistryConfig,
        balance_oracle: BalanceOracle,
        authority_oracle: AuthorityOracle,
        verify: bool = True,
        **kwargs,
    ) -> "RegistryService":
        """
        Open a registry over an existing store.

        Raises:
            ChainError: If verify is set and the audit log or the claims
                table has been tampered with
        """
        if verify:
            events, claims = store.snapshot()
            cls._verify_event_chain(events)
            cls._verify_claims_match_log(events, claims)
            logger.info("Audit chain verified", event_count=len(events))

        return cls(
            config=config,
            balance_oracle=balance_oracle,
            authority_oracle=authority_oracle,
            store=store,
            **kwargs,
        )

    @staticmethod
    def _verify_event_chain(events: list[RegistryEvent]) -> None:
        """
        Verify a complete event chain.

        Raises ChainError at the first broken sequence, link or hash.
        """
        prev_hash = None

        for expected_sequence, event in enumerate(events):
            if event.sequence_number != expected_sequence:
                raise ChainError(
                    f"Sequence number gap or out-of-order event. "
                    f"Expected {expected_sequence}, got {event.sequence_number}"
                )

            if event.previous_event_hash != prev_hash:
                raise ChainError(
                    f"Chain linkage broken at sequence {expected_sequence}. "
                    f"Expected previous hash '{prev_hash[:16] if prev_hash else 'None'}...', "
                    f"got '{event.previous_event_hash[:16] if event.previous_event_hash else 'None'}...'"
                )

            computed_hash = Hasher.hash_event(event.payload, prev_hash)
            if computed_hash != event.event_hash:
                raise ChainError(
                    f"Hash verification failed at sequence {expected_sequence}. "
                    f"Computed: {computed_hash[:16]}..., "
                    f"Stored: {event.event_hash[:16]}..."
                )

            if event.payload.get("actor") != event.actor:
                raise ChainError(
                    f"Event at sequence {expected_sequence} is indexed under "
                    f"{event.actor} but its payload names {event.payload.get('actor')}"
                )

            try:
                event.validate_chain_rules()
            except ValueError as e:
                raise ChainError(str(e)) from e

            prev_hash = event.event_hash

    @staticmethod
    def _verify_claims_match_log(events: list[RegistryEvent], claims: dict[str, int]) -> None:
        """The claims table must equal the last amount logged per actor."""
        expected: dict[str, int] = {}
        for event in events:
            expected[event.actor] = event.amount

        if expected != claims:
            drifted = sorted(
                actor for actor in set(expected) | set(claims)
                if expected.get(actor) != claims.get(actor)
            )
            raise ChainError(
                f"Claims table disagrees with the audit log for: {', '.join(drifted)}"
            )
