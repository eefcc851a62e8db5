"""
Shop settings persistence, keyed by shop domain
"""
import logging
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from shop_relay.db.transactions import atomic_transaction
from shop_relay.models.shop_linkage import ShopLinkage
from shop_relay.services.identity import DegradedIdentity, RelayIdentity, identity_user_id

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "relay_user_id",
    "identity_degraded",
    "relay_user_email",
    "api_key_id",
    "api_key_name",
    "api_secret",
    "plan_id",
    "plan_name",
    "sms_enabled",
    "whatsapp_enabled",
    "notification_channel",
    "default_sms_mode",
    "default_sms_device_id",
    "default_sms_sim",
    "default_wa_account",
    "notify_order_created",
    "notify_order_shipped",
    "order_created_template",
    "order_shipped_template",
}

API_KEY_FIELDS = ("api_key_id", "api_key_name", "api_secret", "sms_enabled", "whatsapp_enabled")
PLAN_FIELDS = ("plan_id", "plan_name")
ACCOUNT_FIELDS = ("relay_user_id", "identity_degraded", "relay_user_email") + API_KEY_FIELDS + PLAN_FIELDS

CLEARED_VALUES = {
    "identity_degraded": False,
    "sms_enabled": False,
    "whatsapp_enabled": False,
    "notification_channel": "sms",
    "notify_order_created": True,
    "notify_order_shipped": True,
}


def _check_fields(fields: Iterable[str]):
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown shop settings fields: {sorted(unknown)}")


def get_linkage(db: Session, shop: str) -> Optional[ShopLinkage]:
    return db.query(ShopLinkage).filter_by(shop=shop).first()


@atomic_transaction
def upsert_linkage(db: Session, shop: str, **fields: Any) -> ShopLinkage:
    _check_fields(fields)
    linkage = db.query(ShopLinkage).filter_by(shop=shop).first()
    if linkage is None:
        linkage = ShopLinkage(shop=shop)
        db.add(linkage)
    for name, value in fields.items():
        setattr(linkage, name, value)
    db.flush()
    db.refresh(linkage)
    return linkage


@atomic_transaction
def clear_linkage_fields(db: Session, shop: str, fields: Iterable[str]) -> Optional[ShopLinkage]:
    fields = tuple(fields)
    _check_fields(fields)
    linkage = db.query(ShopLinkage).filter_by(shop=shop).first()
    if linkage is None:
        return None
    for name in fields:
        setattr(linkage, name, CLEARED_VALUES.get(name))
    db.flush()
    logger.info(f"Cleared {len(fields)} settings field(s) for {shop}")
    return linkage


@atomic_transaction
def delete_shop_data(db: Session, shop: str) -> int:
    deleted = db.query(ShopLinkage).filter_by(shop=shop).delete(synchronize_session=False)
    logger.info(f"Deleted settings for {shop} ({deleted} row(s))")
    return deleted


def link_identity(db: Session, shop: str, identity: RelayIdentity) -> ShopLinkage:
    """Store a verified identity. Credentials of a previously linked account are dropped."""
    user_id = identity_user_id(identity)
    degraded = isinstance(identity, DegradedIdentity)
    fields = {"relay_user_id": user_id, "identity_degraded": degraded, "relay_user_email": identity.email}

    existing = get_linkage(db, shop)
    if existing is not None and existing.is_linked and (
        existing.relay_user_id != user_id or bool(existing.identity_degraded) != degraded
        or (existing.relay_user_email or "").lower() != identity.email
    ):
        logger.info(f"{shop} switches relay account, dropping stored API key and plan")
        fields.update({name: CLEARED_VALUES.get(name) for name in API_KEY_FIELDS + PLAN_FIELDS})

    return upsert_linkage(db, shop, **fields)
