"""
Identity reconciliation between a merchant email and a relay provider account.

initialize() decides whether the email already has a relay account, creates
one when it does not, and issues a verification code bound to the resolved
identity. verify() consumes that code and hands back the identity whose
ownership has now been proven. Persisting the linkage and provisioning keys
is left to the caller.

Existence lookups answer FOUND, NOT_FOUND or INDETERMINATE. INDETERMINATE
(admin capability missing, page cap exhausted) follows the NOT_FOUND branch:
creation is attempted, and a collision reported by the provider routes the
flow back to the existing account.
"""
import asyncio
import logging
import os
import secrets
import string
from dataclasses import dataclass
from types import ModuleType
from typing import Any, Optional, Union

from shop_relay.services import notifications
from shop_relay.services.code_store import VerificationCodeStore
from shop_relay.services.identity import (
    DegradedIdentity,
    LookupOutcome,
    RealIdentity,
    RelayIdentity,
    UserLookup,
    identity_user_id,
    normalize_email,
)
from shop_relay.services.relay_client import RelayClient
from shop_relay.services.relay_errors import (
    RelayAlreadyExists,
    RelayError,
    RelayInvalidInput,
    RelayNotConfigured,
)

logger = logging.getLogger(__name__)

RELAY_COLLISION_SEARCH_MAX_PAGES = int(os.getenv("RELAY_COLLISION_SEARCH_MAX_PAGES", "50"))

PASSWORD_LENGTH = 20
PASSWORD_SYMBOLS = "!@#$%^&*"
PASSWORD_CLASSES = (string.ascii_uppercase, string.ascii_lowercase, string.digits, PASSWORD_SYMBOLS)
PASSWORD_ALPHABET = "".join(PASSWORD_CLASSES)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password with at least one character from every class."""
    rng = secrets.SystemRandom()
    chars = [secrets.choice(charset) for charset in PASSWORD_CLASSES]
    chars += [secrets.choice(PASSWORD_ALPHABET) for _ in range(length - len(chars))]
    rng.shuffle(chars)
    return "".join(chars)


@dataclass
class InitializeResult:
    email: str
    identity: RelayIdentity
    is_new_user: bool
    code_issued: bool
    email_sent: bool
    generated_password: Optional[str] = None

    @property
    def user_id(self) -> Optional[int]:
        return identity_user_id(self.identity)

    @property
    def degraded(self) -> bool:
        return isinstance(self.identity, DegradedIdentity)


class IdentityReconciler:
    def __init__(
        self,
        relay: RelayClient,
        code_store: VerificationCodeStore,
        notifier: Union[ModuleType, Any] = notifications,
        collision_search_pages: int = RELAY_COLLISION_SEARCH_MAX_PAGES,
    ):
        self.relay = relay
        self.code_store = code_store
        self.notifier = notifier
        self.collision_search_pages = collision_search_pages

    async def _lookup(self, email: str) -> UserLookup:
        try:
            return await self.relay.lookup_user(email)
        except RelayNotConfigured:
            return UserLookup.indeterminate()

    async def _resolve_collision(self, email: str) -> RelayIdentity:
        """The provider says the email is taken but our lookup missed it; search again."""
        try:
            lookup = await self.relay.lookup_user(email, max_pages=self.collision_search_pages)
        except RelayError as e:
            logger.warning(f"Collision re-search failed for {email}: {e.message}")
            lookup = UserLookup.indeterminate()

        if lookup.user:
            logger.info(f"Collision resolved for {email}: relay user {lookup.user.id}")
            return RealIdentity(user_id=lookup.user.id, email=email)

        logger.warning(f"Relay account for {email} exists but is not listed, continuing with a degraded identity")
        return DegradedIdentity(email=email)

    async def _issue(
        self,
        email: str,
        name: Optional[str],
        identity: RelayIdentity,
        is_new_user: bool,
        generated_password: Optional[str] = None,
    ) -> InitializeResult:
        code = self.code_store.issue(email, identity_user_id(identity))

        # the code is already valid here, mail delivery only reports
        sends = [self.notifier.send_verification_code(email, code, name)]
        if generated_password:
            sends.append(self.notifier.send_new_account_credentials(email, generated_password, name))
        delivered = await asyncio.gather(*sends)

        email_sent = delivered[0]
        if generated_password and not delivered[1]:
            logger.warning(f"New account credentials for {email} were not delivered, returning them in the response only")
        return InitializeResult(
            email=email,
            identity=identity,
            is_new_user=is_new_user,
            code_issued=True,
            email_sent=email_sent,
            generated_password=generated_password,
        )

    async def initialize(self, email: str, name: Optional[str] = None) -> InitializeResult:
        key = normalize_email(email)
        if not key or "@" not in key:
            raise RelayInvalidInput("A valid email address is required.")

        # always re-check: an earlier call may already have created the account
        lookup = await self._lookup(key)

        if lookup.outcome == LookupOutcome.FOUND:
            logger.info(f"Existing relay user {lookup.user.id} for {key}, sending verification code only")
            identity = RealIdentity(user_id=lookup.user.id, email=key)
            return await self._issue(key, name, identity, is_new_user=False)

        if lookup.outcome == LookupOutcome.INDETERMINATE:
            logger.warning(f"Could not determine whether {key} has a relay account, attempting creation")

        password = generate_password()
        try:
            identity = await self.relay.create_account(name or key.split("@")[0], key, password)
        except RelayAlreadyExists:
            logger.warning(f"Relay reported {key} as already registered")
            identity = await self._resolve_collision(key)
            return await self._issue(key, name, identity, is_new_user=False)

        return await self._issue(key, name, identity, is_new_user=True, generated_password=password)

    async def verify(self, email: str, code: str) -> RelayIdentity:
        """Consume a code. Raises CodeNotFound, CodeExpired or CodeMismatch."""
        key = normalize_email(email)
        pending_user_id = self.code_store.consume(key, code)
        if pending_user_id is None:
            return DegradedIdentity(email=key)
        return RealIdentity(user_id=pending_user_id, email=key)
