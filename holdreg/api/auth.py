"""
Caller authentication for API commands.

A command body names its caller and carries the caller's Ed25519
signature over the canonical hash of every other field in the body,
issued_at included. The registry trusts the caller address only after
that signature checks out and issued_at is recent. Each signed body is
accepted once: a ReplayGuard remembers digests until their issued_at
leaves the window. The guard is per process, so a deployment running
several workers only stops replays that land on the same worker.

Clients build the request model, sign it with sign_request, and send
the result as JSON.
"""

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional

from fastapi import HTTPException
from pydantic import BaseModel

from ..core.hasher import CanonicalSerializationError, Hasher
from ..core.signer import Signer
from ..observability import caller_var


SIGNATURE_FIELD = "caller_signature"


class ReplayGuard:
    """Digests of accepted command bodies, kept until they expire."""

    def __init__(self):
        self._seen: dict[str, datetime] = {}
        self._lock = Lock()

    def claim(self, digest: str, expires_at: datetime, now: datetime) -> bool:
        """Record digest; False if it was already recorded and has not expired."""
        with self._lock:
            self._seen = {d: exp for d, exp in self._seen.items() if exp >= now}
            if digest in self._seen:
                return False
            self._seen[digest] = expires_at
            return True

    def __len__(self) -> int:
        return len(self._seen)


def request_digest(body: BaseModel) -> str:
    """Canonical hash of a command body, excluding the caller signature."""
    return Hasher.hash_data(body.model_dump(mode="python", exclude={SIGNATURE_FIELD}))


def sign_request(body: BaseModel, private_key_b64: str) -> BaseModel:
    """Return a copy of body carrying the caller signature."""
    signature = Signer.sign(request_digest(body), private_key_b64)
    return body.model_copy(update={SIGNATURE_FIELD: signature})


def require_caller(
    body: BaseModel,
    max_age_seconds: int,
    replay_guard: Optional[ReplayGuard] = None,
) -> str:
    """
    Authenticate the caller named in a command body.

    Returns:
        The caller's normalized address

    Raises:
        HTTPException(401): Stale or future-dated issued_at, or a caller
            signature that does not verify, or a body already
            accepted by replay_guard
    """
    issued_at: datetime = body.issued_at
    if issued_at.tzinfo is None:
        raise HTTPException(status_code=401, detail="issued_at must include a timezone")

    now = datetime.now(timezone.utc)
    window = timedelta(seconds=max_age_seconds)
    if issued_at < now - window or issued_at > now + window:
        raise HTTPException(
            status_code=401,
            detail=f"issued_at is outside the {max_age_seconds}s request window",
        )

    try:
        digest = request_digest(body)
    except CanonicalSerializationError as e:
        raise HTTPException(status_code=401, detail=str(e)) from None

    if not Signer.verify(digest, getattr(body, SIGNATURE_FIELD), body.caller):
        raise HTTPException(status_code=401, detail="Caller signature does not verify")

    if replay_guard is not None and not replay_guard.claim(digest, issued_at + window, now):
        raise HTTPException(status_code=401, detail="Request was already submitted")

    caller = body.caller.lower()
    caller_var.set(caller)
    return caller
