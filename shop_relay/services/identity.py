"""
Identity types shared by the relay client, the reconciliation engine and persistence.

A relay account is either known by its provider-assigned id (RealIdentity) or
proven by email ownership only, without an id the listing API would surface
(DegradedIdentity). Operations that need a real id must reject the latter.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

# Wire value older clients used for a degraded identity. Only ever mapped on
# input, never produced.
LEGACY_DEGRADED_USER_ID = 999999


@dataclass(frozen=True)
class RelayUser:
    id: int
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class RealIdentity:
    user_id: int
    email: str


@dataclass(frozen=True)
class DegradedIdentity:
    email: str


RelayIdentity = Union[RealIdentity, DegradedIdentity]


class LookupOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class UserLookup:
    outcome: LookupOutcome
    user: Optional[RelayUser] = None

    @classmethod
    def found(cls, user: RelayUser) -> "UserLookup":
        return cls(LookupOutcome.FOUND, user)

    @classmethod
    def not_found(cls) -> "UserLookup":
        return cls(LookupOutcome.NOT_FOUND)

    @classmethod
    def indeterminate(cls) -> "UserLookup":
        return cls(LookupOutcome.INDETERMINATE)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def identity_from_user_id(user_id: Optional[int], email: str) -> RelayIdentity:
    """Map a stored or submitted user id back onto an identity."""
    if user_id is None or user_id == LEGACY_DEGRADED_USER_ID:
        return DegradedIdentity(email=email)
    return RealIdentity(user_id=int(user_id), email=email)


def identity_user_id(identity: RelayIdentity) -> Optional[int]:
    if isinstance(identity, RealIdentity):
        return identity.user_id
    return None
