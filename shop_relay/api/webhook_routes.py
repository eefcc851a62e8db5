import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from shop_relay.api.link_routes import get_relay_client
from shop_relay.db.session import get_db
from shop_relay.services.relay_client import RelayClient
from shop_relay.services.shopify_auth import verify_webhook_hmac
from shop_relay.services.webhook_handlers import (
    ORDER_CREATED,
    ORDER_FULFILLED,
    acknowledge,
    handle_app_uninstalled,
    handle_order_event,
    handle_shop_redact,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class ShopifyWebhook:
    def __init__(self, shop: str, topic: str, payload: dict):
        self.shop = shop
        self.topic = topic
        self.payload = payload


async def verified_webhook(request: Request) -> ShopifyWebhook:
    body = await request.body()
    if not verify_webhook_hmac(body, request.headers.get("X-Shopify-Hmac-Sha256", "")):
        logger.warning(f"Rejected webhook with invalid HMAC on {request.url.path}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    shop = (request.headers.get("X-Shopify-Shop-Domain") or "").lower()
    if not shop:
        raise HTTPException(status_code=400, detail="Missing shop domain")
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    return ShopifyWebhook(shop, request.headers.get("X-Shopify-Topic", ""), payload)


@router.post("/app/uninstalled")
async def app_uninstalled(
    webhook: ShopifyWebhook = Depends(verified_webhook),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
):
    return await handle_app_uninstalled(db, relay, webhook.shop)


@router.post("/shop/redact")
def shop_redact(webhook: ShopifyWebhook = Depends(verified_webhook), db: Session = Depends(get_db)):
    return handle_shop_redact(db, webhook.shop)


# No customer data is stored, nothing to redact or export
@router.post("/customers/redact")
def customers_redact(webhook: ShopifyWebhook = Depends(verified_webhook)):
    return acknowledge("customers/redact", webhook.shop)


@router.post("/customers/data_request")
def customers_data_request(webhook: ShopifyWebhook = Depends(verified_webhook)):
    return acknowledge("customers/data_request", webhook.shop)


@router.post("/orders/create")
def orders_create(
    background_tasks: BackgroundTasks,
    webhook: ShopifyWebhook = Depends(verified_webhook),
    db: Session = Depends(get_db),
):
    return handle_order_event(db, webhook.shop, webhook.payload, ORDER_CREATED, background_tasks)


@router.post("/orders/fulfilled")
def orders_fulfilled(
    background_tasks: BackgroundTasks,
    webhook: ShopifyWebhook = Depends(verified_webhook),
    db: Session = Depends(get_db),
):
    return handle_order_event(db, webhook.shop, webhook.payload, ORDER_FULFILLED, background_tasks)


@router.post("/orders/cancelled")
def orders_cancelled(webhook: ShopifyWebhook = Depends(verified_webhook)):
    return acknowledge("orders/cancelled", webhook.shop)
