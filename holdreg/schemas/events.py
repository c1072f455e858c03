"""
Registration Event Schema

The registry store only ever holds the latest claim per actor.
History lives here: every accepted registration appends one immutable,
hash-chained event carrying the audit record {actor, amount, message}.

Rejected registrations append nothing.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """
    Audit log event types.
    You can add more later, never remove.
    """
    HOLDING_REGISTERED = "HOLDING_REGISTERED"


class HoldingRegisteredPayload(BaseModel):
    """
    Payload for HOLDING_REGISTERED.

    actor, amount and message form the audit record. registered_by and
    delegated say which registration path produced it.
    """
    actor: str = Field(
        ...,
        description="Address whose holding is claimed"
    )

    amount: int = Field(
        ...,
        ge=0,
        description="Claimed amount; replaces any previous claim for the actor"
    )

    message: str = Field(
        ...,
        description="Attestation message, verbatim"
    )

    registered_by: str = Field(
        ...,
        description="Address that submitted the registration"
    )

    delegated: bool = Field(
        default=False,
        description="True when a facilitator registered on the actor's behalf"
    )

    schema_version: int = 1


class RegistryEvent(BaseModel):
    """
    One entry in the append-only audit log.
    """
    event_id: UUID
    sequence_number: int = Field(..., ge=0)
    event_type: EventType
    actor: str

    payload: dict[str, Any] = Field(
        ...,
        description="Canonical payload for this event type"
    )

    # previous_event_hash: None ONLY for genesis (sequence_number == 0)
    previous_event_hash: Optional[str] = None
    event_hash: str = Field(
        ...,
        description="SHA-256 of the canonical payload chained to the previous hash"
    )

    created_at: datetime

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0

    @property
    def amount(self) -> int:
        return self.payload["amount"]

    @property
    def message(self) -> str:
        return self.payload["message"]

    def validate_chain_rules(self) -> None:
        """
        Validate chain linkage rules.

        Raises ValueError if rules are violated.
        """
        if self.sequence_number == 0:
            if self.previous_event_hash is not None:
                raise ValueError(
                    f"Genesis event (sequence 0) must have previous_event_hash=None, "
                    f"got: {self.previous_event_hash}"
                )
        else:
            if self.previous_event_hash is None:
                raise ValueError(
                    f"Non-genesis event (sequence {self.sequence_number}) must have "
                    f"previous_event_hash set, got None"
                )
            if len(self.previous_event_hash) != 64:
                raise ValueError(
                    f"previous_event_hash must be 64 hex characters, "
                    f"got {len(self.previous_event_hash)}"
                )
