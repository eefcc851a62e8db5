"""
Verification code store: single-use, ten minute proof of email ownership.

Two implementations share one contract. InMemoryCodeStore suits a single
process; SqlCodeStore keeps codes (hashed) in the database so every
instance behind a load balancer sees the same entry.
"""
import hmac
import logging
import os
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from shop_relay.db.transactions import atomic_transaction, retry_on_conflict
from shop_relay.models.verification_code import VerificationCode
from shop_relay.services.identity import normalize_email
from shop_relay.services.relay_errors import CodeExpired, CodeMismatch, CodeNotFound

logger = logging.getLogger(__name__)

CODE_TTL = timedelta(minutes=10)
CODE_STORE = os.getenv("CODE_STORE", "database").lower()

code_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class VerificationEntry:
    email: str
    code: str
    expires_at: datetime
    pending_user_id: Optional[int]


class VerificationCodeStore(Protocol):
    def issue(self, email: str, pending_user_id: Optional[int]) -> str:
        """Create a fresh code for the email, replacing any earlier one."""

    def consume(self, email: str, code: str) -> Optional[int]:
        """Return the pending user id (None for a degraded identity) and delete the entry.

        Raises CodeNotFound, CodeExpired (entry removed) or CodeMismatch (entry kept).
        """


class InMemoryCodeStore:
    def __init__(self, clock: Clock = utcnow):
        self._entries: Dict[str, VerificationEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def issue(self, email: str, pending_user_id: Optional[int]) -> str:
        key = normalize_email(email)
        code = generate_code()
        with self._lock:
            self._entries[key] = VerificationEntry(
                email=key,
                code=code,
                expires_at=self._clock() + CODE_TTL,
                pending_user_id=pending_user_id,
            )
        logger.info(f"Verification code issued for {key}")
        return code

    def consume(self, email: str, code: str) -> Optional[int]:
        key = normalize_email(email)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise CodeNotFound()
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                logger.info(f"Expired verification code removed for {key}")
                raise CodeExpired()
            if not hmac.compare_digest(entry.code, str(code or "").strip()):
                raise CodeMismatch()
            del self._entries[key]
        logger.info(f"Verification code consumed for {key}")
        return entry.pending_user_id

    def peek(self, email: str) -> Optional[VerificationEntry]:
        with self._lock:
            return self._entries.get(normalize_email(email))


@retry_on_conflict(max_attempts=3)
@atomic_transaction
def _replace_code(db: Session, email: str, code_hash: str, expires_at: datetime, pending_user_id: Optional[int]):
    db.query(VerificationCode).filter_by(email=email).delete(synchronize_session=False)
    db.add(VerificationCode(email=email, code_hash=code_hash, expires_at=expires_at, pending_user_id=pending_user_id))
    db.flush()


@atomic_transaction
def _take_code(db: Session, email: str, code: str, now: datetime):
    """Returns (status, pending_user_id); deletions commit with the transaction."""
    row = db.query(VerificationCode).filter_by(email=email).with_for_update().first()
    if row is None:
        return "not_found", None
    if now >= _as_utc(row.expires_at):
        db.delete(row)
        return "expired", None
    if not code_context.verify(str(code or "").strip(), row.code_hash):
        return "mismatch", None
    pending_user_id = row.pending_user_id
    db.delete(row)
    return "ok", pending_user_id


class SqlCodeStore:
    def __init__(self, session_factory: Callable[[], Session], clock: Clock = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def issue(self, email: str, pending_user_id: Optional[int]) -> str:
        key = normalize_email(email)
        code = generate_code()
        db = self._session_factory()
        try:
            _replace_code(db, key, code_context.hash(code), self._clock() + CODE_TTL, pending_user_id)
        finally:
            db.close()
        logger.info(f"Verification code issued for {key}")
        return code

    def consume(self, email: str, code: str) -> Optional[int]:
        key = normalize_email(email)
        db = self._session_factory()
        try:
            status, pending_user_id = _take_code(db, key, code, self._clock())
        finally:
            db.close()

        if status == "not_found":
            raise CodeNotFound()
        if status == "expired":
            logger.info(f"Expired verification code removed for {key}")
            raise CodeExpired()
        if status == "mismatch":
            raise CodeMismatch()
        logger.info(f"Verification code consumed for {key}")
        return pending_user_id


_store: Optional[VerificationCodeStore] = None


def get_code_store() -> VerificationCodeStore:
    global _store
    if _store is None:
        if CODE_STORE == "memory":
            _store = InMemoryCodeStore()
        else:
            from shop_relay.db.session import SessionLocal
            _store = SqlCodeStore(SessionLocal)
    return _store
