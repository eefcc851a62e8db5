from sqlalchemy import Column, Integer, String, DateTime
from .base import Base

class VerificationCode(Base):
    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    code_hash = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    # NULL marks a code issued for a degraded identity
    pending_user_id = Column(Integer, nullable=True)
