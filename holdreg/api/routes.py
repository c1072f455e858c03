"""
API Routes for the Holding Registry

Command endpoints (signed by the caller):
- POST /registry/register          - Register a holding for yourself
- POST /registry/register-for      - Facilitator registers for an actor

Query endpoints (pure reads, live balance):
- GET /registry/events             - Full audit log
- GET /registry/{actor}            - Claimed, balance and verified amount
- GET /registry/{actor}/verified   - Verified amount
- GET /registry/{actor}/eligibility - (eligible, standing)
- GET /registry/{actor}/events     - Audit records for one actor
"""

from datetime import datetime
from typing import NoReturn

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..core.registry import (
    InsufficientBalanceError,
    InvalidSignatureError,
    RegistryError,
    RegistryService,
    UnauthorizedError,
    ValidationError,
)
from ..core.signer import Signer
from ..schemas import HoldingStatus, RegistryEvent
from .auth import require_caller


router = APIRouter(prefix="/registry", tags=["Registry"])

ADDRESS_REGEX = r"^0x[0-9a-fA-F]{64}$"


# ============================================================
# Dependency Injection
# ============================================================

def get_registry(request: Request) -> RegistryService:
    return request.app.state.registry


# ============================================================
# Request/Response Models
# ============================================================

class RegisterRequest(BaseModel):
    """Register a holding for the caller."""
    caller: str = Field(..., pattern=ADDRESS_REGEX)
    amount: int = Field(..., ge=0)
    message: str
    issued_at: datetime
    caller_signature: str = ""


class RegisterForRequest(BaseModel):
    """Register a holding for actor, as a facilitator."""
    caller: str = Field(..., pattern=ADDRESS_REGEX)
    actor: str = Field(..., pattern=ADDRESS_REGEX)
    amount: int = Field(..., ge=0)
    message: str
    signature: str = Field(..., description="actor's attestation signature over message")
    issued_at: datetime
    caller_signature: str = ""


class RegistrationResponse(BaseModel):
    event_id: str
    sequence_number: int
    event_hash: str
    actor: str
    amount: int
    message: str
    registered_by: str
    delegated: bool
    created_at: datetime

    @classmethod
    def from_event(cls, event: RegistryEvent) -> "RegistrationResponse":
        return cls(
            event_id=str(event.event_id),
            sequence_number=event.sequence_number,
            event_hash=event.event_hash,
            actor=event.actor,
            amount=event.amount,
            message=event.message,
            registered_by=event.payload["registered_by"],
            delegated=event.payload.get("delegated", False),
            created_at=event.created_at,
        )


class VerifiedAmountResponse(BaseModel):
    actor: str
    verified_amount: int


class EligibilityResponse(BaseModel):
    eligible: bool
    standing: bool


# ============================================================
# Error mapping
# ============================================================

def _raise_http(error: RegistryError) -> NoReturn:
    if isinstance(error, UnauthorizedError):
        raise HTTPException(status_code=403, detail=str(error))
    if isinstance(error, InvalidSignatureError):
        raise HTTPException(status_code=400, detail=str(error))
    if isinstance(error, InsufficientBalanceError):
        raise HTTPException(status_code=422, detail=str(error))
    if isinstance(error, ValidationError):
        raise HTTPException(status_code=400, detail=str(error))
    raise HTTPException(status_code=500, detail=str(error))


def _require_address(actor: str) -> str:
    if not Signer.is_address(actor):
        raise HTTPException(status_code=400, detail=f"Invalid address: {actor}")
    return actor.lower()


# ============================================================
# Commands
# ============================================================

@router.post("/register", response_model=RegistrationResponse, status_code=201)
def register(request: Request, body: RegisterRequest):
    """
    Register (or replace) the caller's own claimed holding.

    Accepted only if the caller's live balance covers amount.
    """
    registry = get_registry(request)
    caller = require_caller(
        body,
        registry.config.request_max_age_seconds,
        replay_guard=request.app.state.replay_guard,
    )

    try:
        event = registry.register(caller=caller, amount=body.amount, message=body.message)
    except RegistryError as e:
        _raise_http(e)

    return RegistrationResponse.from_event(event)


@router.post("/register-for", response_model=RegistrationResponse, status_code=201)
def register_for(request: Request, body: RegisterForRequest):
    """
    Register (or replace) actor's claimed holding on their behalf.

    The caller must hold the facilitator role and present actor's
    signature over message.
    """
    registry = get_registry(request)
    caller = require_caller(
        body,
        registry.config.request_max_age_seconds,
        replay_guard=request.app.state.replay_guard,
    )

    try:
        event = registry.register_for(
            caller=caller,
            actor=body.actor,
            amount=body.amount,
            message=body.message,
            signature=body.signature,
        )
    except RegistryError as e:
        _raise_http(e)

    return RegistrationResponse.from_event(event)


# ============================================================
# Queries
# ============================================================

@router.get("/events", response_model=list[RegistrationResponse])
def list_events(request: Request):
    """The full audit log, oldest first."""
    registry = get_registry(request)
    return [RegistrationResponse.from_event(e) for e in registry.get_events()]


@router.get("/{actor}", response_model=HoldingStatus)
def holding_status(request: Request, actor: str):
    """Stored claim, live balance and the resulting verified amount."""
    registry = get_registry(request)
    return registry.holding_status(_require_address(actor))


@router.get("/{actor}/verified", response_model=VerifiedAmountResponse)
def verified_amount(request: Request, actor: str):
    registry = get_registry(request)
    actor = _require_address(actor)
    return VerifiedAmountResponse(actor=actor, verified_amount=registry.verified_amount(actor))


@router.get("/{actor}/eligibility", response_model=EligibilityResponse)
def eligibility(request: Request, actor: str):
    """
    Eligibility check for external role management.

    standing is always true; eligible means a non-zero verified amount.
    """
    registry = get_registry(request)
    result = registry.eligibility(_require_address(actor))
    return EligibilityResponse(eligible=result.eligible, standing=result.standing)


@router.get("/{actor}/events", response_model=list[RegistrationResponse])
def actor_events(request: Request, actor: str):
    registry = get_registry(request)
    events = registry.get_events_for_actor(_require_address(actor))
    return [RegistrationResponse.from_event(e) for e in events]
