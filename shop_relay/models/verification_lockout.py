from sqlalchemy import Column, Integer, String, DateTime
from .base import Base
from datetime import datetime, timezone

class VerificationLockout(Base):
    __tablename__ = "verification_lockouts"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False)
    first_failed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    failed_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime(timezone=True), nullable=True)
