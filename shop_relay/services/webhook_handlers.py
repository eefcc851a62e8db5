"""
Shopify webhook glue: compliance topics, uninstall cleanup and order notifications.

Order notifications are built from a snapshot of the shop settings while the
request session is still open, then sent from a background task with its own
relay client. Send failures are logged and never retried.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from shop_relay.models.shop_linkage import ShopLinkage
from shop_relay.services.identity import RealIdentity
from shop_relay.services.relay_client import RelayClient
from shop_relay.services.relay_errors import RelayError
from shop_relay.services.settings_store import delete_shop_data, get_linkage

logger = logging.getLogger(__name__)

ORDER_CREATED = "orders/create"
ORDER_FULFILLED = "orders/fulfilled"

DEFAULT_TEMPLATES = {
    ORDER_CREATED: "Hi {{customer_name}}, we received your order {{order_name}}.",
    ORDER_FULFILLED: "Good news! Your order {{order_name}} has shipped.",
}

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class OrderNotification:
    shop: str
    channel: str
    phone: str
    message: str
    secret: str
    sms_mode: Optional[str] = None
    sms_device: Optional[str] = None
    sms_sim: Optional[int] = None
    wa_account: Optional[str] = None


def extract_phone(order: Dict[str, Any]) -> Optional[str]:
    candidates = (
        order.get("phone"),
        (order.get("shipping_address") or {}).get("phone"),
        (order.get("billing_address") or {}).get("phone"),
        (order.get("customer") or {}).get("phone"),
    )
    for phone in candidates:
        if phone and str(phone).strip():
            return str(phone).strip()
    return None


def customer_name(order: Dict[str, Any]) -> str:
    customer = order.get("customer") or {}
    candidates = (
        customer.get("first_name"),
        (order.get("shipping_address") or {}).get("name"),
        (order.get("billing_address") or {}).get("name"),
        customer.get("last_name"),
    )
    for name in candidates:
        if name and str(name).strip():
            return str(name).strip()
    return "Customer"


def tracking_url(order: Dict[str, Any]) -> str:
    for fulfillment in order.get("fulfillments") or []:
        if fulfillment.get("tracking_url"):
            return fulfillment["tracking_url"]
    return order.get("order_status_url") or ""


def render_template(template: str, context: Dict[str, str]) -> str:
    return PLACEHOLDER_PATTERN.sub(lambda m: context.get(m.group(1), m.group(0)), template)


def choose_channel(linkage: ShopLinkage) -> Optional[str]:
    sms_ready = bool(linkage.sms_enabled and linkage.default_sms_mode == "devices" and linkage.default_sms_device_id)
    wa_ready = bool(linkage.whatsapp_enabled and linkage.default_wa_account)

    channel = linkage.notification_channel or "sms"
    if channel == "sms":
        return "sms" if sms_ready else None
    if channel == "whatsapp":
        return "whatsapp" if wa_ready else None
    if sms_ready:
        return "sms"
    if wa_ready:
        return "whatsapp"
    return None


def build_order_notification(linkage: Optional[ShopLinkage], order: Dict[str, Any], topic: str) -> tuple:
    """Returns (notification, None) or (None, reason it was skipped)."""
    if linkage is None or not linkage.api_secret:
        return None, "no API key connected"

    enabled = linkage.notify_order_created if topic == ORDER_CREATED else linkage.notify_order_shipped
    if not enabled:
        return None, f"{topic} notifications disabled"

    phone = extract_phone(order)
    if not phone:
        return None, "order has no phone number"

    channel = choose_channel(linkage)
    if channel is None:
        return None, f"channel {linkage.notification_channel} is not configured"

    custom = linkage.order_created_template if topic == ORDER_CREATED else linkage.order_shipped_template
    context = {
        "order_name": str(order.get("name") or order.get("order_number") or ""),
        "customer_name": customer_name(order),
        "tracking_url": tracking_url(order),
    }
    message = render_template(custom or DEFAULT_TEMPLATES[topic], context)

    notification = OrderNotification(
        shop=linkage.shop,
        channel=channel,
        phone=phone,
        message=message,
        secret=linkage.api_secret,
        sms_mode=linkage.default_sms_mode,
        sms_device=linkage.default_sms_device_id,
        sms_sim=linkage.default_sms_sim,
        wa_account=linkage.default_wa_account,
    )
    return notification, None


async def send_order_notification(notification: OrderNotification, relay_factory: Callable[[], RelayClient] = RelayClient):
    async with relay_factory() as relay:
        try:
            if notification.channel == "whatsapp":
                await relay.send_whatsapp(notification.secret, notification.wa_account, notification.phone, notification.message)
            else:
                await relay.send_sms(
                    notification.secret,
                    notification.phone,
                    notification.message,
                    mode=notification.sms_mode or "devices",
                    device=notification.sms_device,
                    sim=notification.sms_sim,
                )
            logger.info(f"Order {notification.channel} notification sent for {notification.shop}")
        except RelayError as e:
            logger.error(f"Order notification for {notification.shop} failed: {e.message}")


def handle_order_event(db: Session, shop: str, order: Dict[str, Any], topic: str, background_tasks: BackgroundTasks) -> dict:
    notification, reason = build_order_notification(get_linkage(db, shop), order, topic)
    if notification is None:
        logger.info(f"Skipping {topic} notification for {shop}: {reason}")
        return {"status": "skipped", "reason": reason}
    background_tasks.add_task(send_order_notification, notification)
    return {"status": "queued", "channel": notification.channel}


async def handle_app_uninstalled(db: Session, relay: RelayClient, shop: str) -> dict:
    linkage = get_linkage(db, shop)
    if linkage is not None and linkage.relay_user_id and not linkage.identity_degraded and relay.admin_configured:
        identity = RealIdentity(user_id=linkage.relay_user_id, email=linkage.relay_user_email or "")
        try:
            await relay.delete_all_api_keys(identity)
        except RelayError as e:
            logger.error(f"API key cleanup on uninstall failed for {shop}: {e.message}")
    delete_shop_data(db, shop)
    logger.info(f"App uninstalled from {shop}, shop data removed")
    return {"status": "success"}


def handle_shop_redact(db: Session, shop: str) -> dict:
    delete_shop_data(db, shop)
    return {"status": "success"}


def acknowledge(topic: str, shop: str) -> dict:
    logger.info(f"Acknowledged {topic} webhook for {shop}")
    return {"status": "success"}
