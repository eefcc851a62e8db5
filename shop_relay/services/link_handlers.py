import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.orm import Session

from shop_relay.db.transactions import TransactionContext
from shop_relay.models.shop_linkage import ShopLinkage
from shop_relay.models.verification_lockout import VerificationLockout
from shop_relay.services.identity import (
    DegradedIdentity,
    RealIdentity,
    RelayIdentity,
    identity_from_user_id,
    identity_user_id,
    normalize_email,
)
from shop_relay.services.reconciliation import IdentityReconciler
from shop_relay.services.relay_client import DASHBOARD_REMEDY, RelayClient
from shop_relay.services.relay_errors import (
    CodeExpired,
    CodeMismatch,
    CodeNotFound,
    RelayAlreadyExists,
    RelayError,
    RelayForbidden,
    RelayInvalidCredentials,
    RelayInvalidInput,
    RelayNotConfigured,
    RelayNotFound,
    RelayUpstreamUnavailable,
    VerificationError,
)
from shop_relay.services.settings_store import (
    ACCOUNT_FIELDS,
    API_KEY_FIELDS,
    clear_linkage_fields,
    get_linkage,
    link_identity,
    upsert_linkage,
)

logger = logging.getLogger(__name__)

LINK_AUTO_PROVISION = os.getenv("LINK_AUTO_PROVISION", "true").lower() in ("1", "true", "yes")
LINK_DEFAULT_API_KEY_NAME = os.getenv("LINK_DEFAULT_API_KEY_NAME", "Shopify API Key")
LINK_DEFAULT_PLAN_ID = int(os.getenv("LINK_DEFAULT_PLAN_ID")) if os.getenv("LINK_DEFAULT_PLAN_ID") else None
LINK_DEFAULT_PLAN_DURATION_MONTHS = int(os.getenv("LINK_DEFAULT_PLAN_DURATION_MONTHS", "1"))
VERIFY_MAX_ATTEMPTS = int(os.getenv("VERIFY_MAX_ATTEMPTS", "5"))
VERIFY_LOCKOUT_MINUTES = int(os.getenv("VERIFY_LOCKOUT_MINUTES", "15"))

READ_PERMISSIONS = ["get_credits", "get_contacts", "get_devices", "get_wa_accounts", "get_subscription"]
SEND_PERMISSIONS = ["sms_send", "wa_send", "sms_send_bulk", "wa_send_bulk"]
ALLOWED_PERMISSIONS = set(READ_PERMISSIONS + SEND_PERMISSIONS + ["get_groups", "create_group", "create_contact"])
DEFAULT_PERMISSIONS = READ_PERMISSIONS + ["sms_send", "wa_send"]

ERROR_STATUS = (
    (RelayNotConfigured, 503),
    (RelayAlreadyExists, 409),
    (RelayInvalidCredentials, 401),
    (RelayNotFound, 404),
    (RelayUpstreamUnavailable, 502),
    (RelayForbidden, 403),
    (RelayInvalidInput, 422),
    (CodeNotFound, 404),
    (CodeExpired, 410),
    (CodeMismatch, 400),
)


def http_error(error: Exception) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.message)
    return HTTPException(status_code=500, detail="Unexpected relay error")


# ---- verification lockout ----

def _ensure_not_locked(lockout: VerificationLockout | None):
    if lockout and lockout.locked_until and lockout.locked_until.replace(tzinfo=timezone.utc) > datetime.now(timezone.utc):
        raise HTTPException(status_code=403, detail="Too many failed attempts. Please try again later.")


def _window_expired(lockout: VerificationLockout, now: datetime) -> bool:
    if lockout.locked_until:
        return True
    if not lockout.first_failed_at:
        return False
    return lockout.first_failed_at.replace(tzinfo=timezone.utc) + timedelta(minutes=VERIFY_LOCKOUT_MINUTES) <= now


def _register_failed_attempt_and_maybe_lock(db: Session, lockout: VerificationLockout | None, email: str):
    now = datetime.now(timezone.utc)
    with TransactionContext(db):
        if not lockout:
            lockout = VerificationLockout(email=email, failed_attempts=1, first_failed_at=now)
            db.add(lockout)
        else:
            if _window_expired(lockout, now):
                # previous lock or failure window has run out, start counting again
                lockout.locked_until = None
                lockout.failed_attempts = 0
                lockout.first_failed_at = now
            lockout.failed_attempts += 1
        attempts = lockout.failed_attempts
        if attempts >= VERIFY_MAX_ATTEMPTS:
            lockout.locked_until = now + timedelta(minutes=VERIFY_LOCKOUT_MINUTES)

    if attempts >= VERIFY_MAX_ATTEMPTS:
        logger.warning(f"Verification locked for {email} after {attempts} failed attempts")
        raise HTTPException(
            status_code=403,
            detail="Verification has been locked temporarily due to failed attempts.",
        )
    return lockout


def _clear_lockout_if_exists(db: Session, lockout: VerificationLockout | None):
    if lockout:
        with TransactionContext(db):
            db.delete(lockout)


# ---- account linking ----

async def initialize_account(reconciler: IdentityReconciler, email: str, name: Optional[str]) -> dict:
    try:
        result = await reconciler.initialize(email, name)
    except RelayError as e:
        logger.error(f"Account initialization failed for {email}: {e.message}")
        raise http_error(e)

    if result.is_new_user:
        message = "Relay account created. Enter the verification code we sent to your email."
    else:
        message = "A relay account already exists for this email. Enter the verification code we sent to prove ownership."
    if not result.email_sent:
        message += " Email delivery failed, please contact support for the code."

    response = {
        "status": "success",
        "email": result.email,
        "isNewUser": result.is_new_user,
        "codeIssued": result.code_issued,
        "emailSent": result.email_sent,
        "identityDegraded": result.degraded,
        "message": message,
    }
    if result.generated_password:
        response["generatedPassword"] = result.generated_password
    return response


async def _provision(db: Session, relay: RelayClient, shop: str, identity: RelayIdentity) -> Dict[str, str]:
    """Default key and plan for a freshly linked account. Failures are reported, never raised."""
    if not LINK_AUTO_PROVISION:
        return {"apiKey": "skipped", "plan": "skipped"}
    if isinstance(identity, DegradedIdentity) or not relay.admin_configured:
        return {"apiKey": "manual", "plan": "manual", "message": DASHBOARD_REMEDY}

    linkage = get_linkage(db, shop)
    status = {}

    if linkage.api_key_id:
        status["apiKey"] = "existing"
    else:
        try:
            key = await relay.issue_api_key(identity, LINK_DEFAULT_API_KEY_NAME, DEFAULT_PERMISSIONS)
            upsert_linkage(
                db,
                shop,
                api_key_id=key.id,
                api_key_name=key.name,
                api_secret=key.secret,
                sms_enabled=True,
                whatsapp_enabled=True,
            )
            status["apiKey"] = "issued"
        except RelayError as e:
            logger.error(f"Default API key provisioning failed for {shop}: {e.message}")
            status["apiKey"] = "failed"
            status["apiKeyError"] = e.message

    if LINK_DEFAULT_PLAN_ID is None:
        status["plan"] = "skipped"
    elif linkage.plan_id:
        status["plan"] = "existing"
    else:
        try:
            await relay.assign_plan(identity, LINK_DEFAULT_PLAN_ID, LINK_DEFAULT_PLAN_DURATION_MONTHS)
            upsert_linkage(db, shop, plan_id=LINK_DEFAULT_PLAN_ID)
            status["plan"] = "assigned"
        except RelayError as e:
            logger.error(f"Default plan assignment failed for {shop}: {e.message}")
            status["plan"] = "failed"
            status["planError"] = e.message

    return status


async def verify_code_and_link(
    db: Session,
    reconciler: IdentityReconciler,
    relay: RelayClient,
    shop: str,
    email: str,
    code: str,
) -> dict:
    key = normalize_email(email)
    lockout = db.query(VerificationLockout).filter_by(email=key).first()
    _ensure_not_locked(lockout)

    try:
        identity = await reconciler.verify(key, code)
    except CodeMismatch as e:
        _register_failed_attempt_and_maybe_lock(db, lockout, key)
        raise http_error(e)
    except VerificationError as e:
        raise http_error(e)

    _clear_lockout_if_exists(db, lockout)
    link_identity(db, shop, identity)
    logger.info(f"{shop} linked to relay account {identity_user_id(identity) or 'degraded'} ({key})")

    provisioning = await _provision(db, relay, shop, identity)
    return {
        "status": "success",
        "userId": identity_user_id(identity),
        "identityDegraded": isinstance(identity, DegradedIdentity),
        "email": key,
        "provisioning": provisioning,
    }


def _linked(db: Session, shop: str) -> Tuple[ShopLinkage, RelayIdentity]:
    linkage = get_linkage(db, shop)
    if linkage is None or not linkage.is_linked:
        raise HTTPException(status_code=404, detail="No relay account is linked to this shop.")
    if linkage.identity_degraded:
        return linkage, DegradedIdentity(email=linkage.relay_user_email or "")
    return linkage, RealIdentity(user_id=linkage.relay_user_id, email=linkage.relay_user_email or "")


def _owned_identity(db: Session, shop: str, requested_user_id: Optional[int]) -> Tuple[ShopLinkage, RelayIdentity]:
    """Resolve the shop's identity, refusing a user id that belongs to someone else."""
    linkage, identity = _linked(db, shop)
    if requested_user_id is None:
        return linkage, identity

    requested = identity_from_user_id(requested_user_id, identity.email)
    if requested != identity:
        logger.warning(f"{shop} requested relay user {requested_user_id} which is not linked to it")
        raise HTTPException(status_code=403, detail="This user does not belong to your shop.")
    return linkage, identity


async def generate_sso_link(db: Session, relay: RelayClient, shop: str, user_id: Optional[int], redirect_path: str) -> dict:
    _, identity = _owned_identity(db, shop, user_id)
    try:
        url = await relay.create_sso_link(identity, redirect_path)
    except RelayError as e:
        raise http_error(e)
    return {"status": "success", "url": url}


async def issue_api_key(
    db: Session,
    relay: RelayClient,
    shop: str,
    user_id: Optional[int],
    name: str,
    permissions: Optional[Iterable[str]],
) -> dict:
    linkage, identity = _owned_identity(db, shop, user_id)
    if linkage.api_key_id:
        raise HTTPException(status_code=409, detail="An API key is already connected. Revoke it before issuing a new one.")

    permissions = list(permissions) if permissions else list(DEFAULT_PERMISSIONS)
    unknown = sorted(set(permissions) - ALLOWED_PERMISSIONS)
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown permissions: {', '.join(unknown)}")

    try:
        key = await relay.issue_api_key(identity, name, permissions)
    except RelayError as e:
        raise http_error(e)

    upsert_linkage(
        db,
        shop,
        api_key_id=key.id,
        api_key_name=key.name,
        api_secret=key.secret,
        sms_enabled=any(p.startswith("sms_") for p in permissions),
        whatsapp_enabled=any(p.startswith("wa_") for p in permissions),
    )
    return {"status": "success", "apiKeyId": key.id, "secret": key.secret, "name": key.name}


async def assign_plan(
    db: Session,
    relay: RelayClient,
    shop: str,
    plan_id: int,
    plan_name: Optional[str],
    duration_months: int,
) -> dict:
    _, identity = _linked(db, shop)
    try:
        await relay.assign_plan(identity, plan_id, duration_months)
    except RelayError as e:
        raise http_error(e)
    upsert_linkage(db, shop, plan_id=plan_id, plan_name=plan_name)
    return {"status": "success", "planId": plan_id, "planName": plan_name}


async def revoke_api_keys(db: Session, relay: RelayClient, shop: str) -> dict:
    linkage = get_linkage(db, shop)
    if linkage is None or not linkage.is_linked:
        return {"status": "success", "deleted": 0}

    deleted = 0
    if linkage.identity_degraded or not relay.admin_configured:
        logger.warning(f"Remote API keys of {shop} must be revoked from the relay dashboard")
    else:
        try:
            deleted = await relay.delete_all_api_keys(RealIdentity(user_id=linkage.relay_user_id, email=linkage.relay_user_email or ""))
        except RelayError as e:
            logger.error(f"Bulk API key revoke failed for {shop}: {e.message}")
            raise http_error(e)

    clear_linkage_fields(db, shop, API_KEY_FIELDS)
    return {"status": "success", "deleted": deleted}


def disconnect(db: Session, shop: str) -> dict:
    clear_linkage_fields(db, shop, ACCOUNT_FIELDS)
    logger.info(f"{shop} disconnected from its relay account")
    return {"status": "success", "message": "Relay account disconnected"}


def linkage_status(db: Session, shop: str) -> dict:
    linkage = get_linkage(db, shop)
    if linkage is None:
        return {"status": "success", "shop": shop, "linked": False}
    return {
        "status": "success",
        "shop": shop,
        "linked": linkage.is_linked,
        "userId": linkage.relay_user_id,
        "identityDegraded": bool(linkage.identity_degraded),
        "email": linkage.relay_user_email,
        "hasApiKey": bool(linkage.api_secret),
        "apiKeyId": linkage.api_key_id,
        "apiKeyName": linkage.api_key_name,
        "planId": linkage.plan_id,
        "planName": linkage.plan_name,
        "smsEnabled": bool(linkage.sms_enabled),
        "whatsappEnabled": bool(linkage.whatsapp_enabled),
        "notificationChannel": linkage.notification_channel,
        "defaultSmsMode": linkage.default_sms_mode,
        "defaultSmsDeviceId": linkage.default_sms_device_id,
        "defaultSmsSim": linkage.default_sms_sim,
        "defaultWaAccount": linkage.default_wa_account,
        "notifyOrderCreated": bool(linkage.notify_order_created),
        "notifyOrderShipped": bool(linkage.notify_order_shipped),
        "orderCreatedTemplate": linkage.order_created_template,
        "orderShippedTemplate": linkage.order_shipped_template,
    }


def _stored_secret(db: Session, shop: str) -> Tuple[ShopLinkage, str]:
    linkage, _ = _linked(db, shop)
    if not linkage.api_secret:
        raise HTTPException(status_code=409, detail="No API key is connected. Issue one before loading account details.")
    return linkage, linkage.api_secret


async def account_overview(db: Session, relay: RelayClient, shop: str) -> dict:
    """Credits and active subscription, keeping the stored plan in step with the provider."""
    linkage, secret = _stored_secret(db, shop)
    try:
        credits, subscription = await asyncio.gather(relay.get_credits(secret), relay.get_subscription(secret))
    except RelayError as e:
        logger.error(f"Account overview failed for {shop}: {e.message}")
        raise http_error(e)

    credits = credits if isinstance(credits, dict) else {}
    subscription = subscription if isinstance(subscription, dict) else {}
    plan_id, plan_name = linkage.plan_id, linkage.plan_name

    package = subscription.get("package")
    if package and subscription.get("name"):
        try:
            synced_id = int(package)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring subscription package {package!r} for {shop}")
        else:
            if (synced_id, subscription["name"]) != (plan_id, plan_name):
                upsert_linkage(db, shop, plan_id=synced_id, plan_name=subscription["name"])
                logger.info(f"Synced plan of {shop} to {subscription['name']} ({synced_id})")
            plan_id, plan_name = synced_id, subscription["name"]

    return {
        "status": "success",
        "credits": credits.get("credits"),
        "currency": credits.get("currency"),
        "usage": subscription.get("usage"),
        "planId": plan_id,
        "planName": plan_name,
    }


async def list_senders(db: Session, relay: RelayClient, shop: str) -> dict:
    _, secret = _stored_secret(db, shop)
    try:
        devices, wa_accounts = await asyncio.gather(relay.get_devices(secret), relay.get_wa_accounts(secret))
    except RelayError as e:
        logger.error(f"Loading senders failed for {shop}: {e.message}")
        raise http_error(e)
    return {"status": "success", "devices": devices, "waAccounts": wa_accounts}


async def list_packages(relay: RelayClient) -> dict:
    try:
        packages = await relay.list_packages()
    except RelayError as e:
        raise http_error(e)
    return {"status": "success", "packages": packages}


async def request_password_reset(relay: RelayClient, email: str) -> dict:
    try:
        await relay.request_password_reset(normalize_email(email))
    except RelayError as e:
        raise http_error(e)
    return {"status": "success", "message": "If the account exists, a password reset email has been sent."}


def save_notification_settings(db: Session, shop: str, fields: Dict[str, Any]) -> dict:
    if not fields:
        raise HTTPException(status_code=422, detail="No settings to update")
    upsert_linkage(db, shop, **fields)
    logger.info(f"Notification settings updated for {shop}: {sorted(fields)}")
    return linkage_status(db, shop)
