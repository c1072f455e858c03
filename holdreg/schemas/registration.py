"""
Registry read models.
"""

from typing import NamedTuple

from pydantic import BaseModel


class Eligibility(NamedTuple):
    """
    Two-value answer expected by the external role-eligibility protocol.

    standing is always True: the registry has no notion of misconduct.
    """
    eligible: bool
    standing: bool


class HoldingStatus(BaseModel):
    """Point-in-time view of one actor's claim against their live balance."""
    actor: str
    claimed_amount: int
    balance: int
    verified_amount: int

    @property
    def is_backed(self) -> bool:
        return self.verified_amount > 0
