# Schemas for the holding registry

from .events import (
    EventType,
    HoldingRegisteredPayload,
    RegistryEvent,
)
from .registration import Eligibility, HoldingStatus

__all__ = [
    "EventType",
    "HoldingRegisteredPayload",
    "RegistryEvent",
    "Eligibility",
    "HoldingStatus",
]
