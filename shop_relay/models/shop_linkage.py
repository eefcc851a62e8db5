from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from .base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ShopLinkage(Base):
    __tablename__ = "shop_linkages"

    id = Column(Integer, primary_key=True, index=True)
    shop = Column(String, unique=True, index=True, nullable=False)

    relay_user_id = Column(Integer, nullable=True)
    identity_degraded = Column(Boolean, nullable=False, default=False)
    relay_user_email = Column(String, nullable=True)

    api_key_id = Column(Integer, nullable=True)
    api_key_name = Column(String, nullable=True)
    api_secret = Column(String, nullable=True)
    plan_id = Column(Integer, nullable=True)
    plan_name = Column(String, nullable=True)

    sms_enabled = Column(Boolean, nullable=False, default=False)
    whatsapp_enabled = Column(Boolean, nullable=False, default=False)
    notification_channel = Column(String, nullable=False, default="sms")
    default_sms_mode = Column(String, nullable=True)
    default_sms_device_id = Column(String, nullable=True)
    default_sms_sim = Column(Integer, nullable=True)
    default_wa_account = Column(String, nullable=True)

    notify_order_created = Column(Boolean, nullable=False, default=True)
    notify_order_shipped = Column(Boolean, nullable=False, default=True)
    order_created_template = Column(Text, nullable=True)
    order_shipped_template = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    @property
    def is_linked(self) -> bool:
        return self.relay_user_id is not None or bool(self.identity_degraded)
