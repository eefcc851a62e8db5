from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from shop_relay.db.session import get_db
from shop_relay.schemas.link_scheme import (
    AssignPlanRequest,
    InitializeAccountRequest,
    IssueApiKeyRequest,
    NotificationSettingsRequest,
    PasswordResetRequest,
    SsoLinkRequest,
    VerifyCodeRequest,
)
from shop_relay.services.code_store import VerificationCodeStore, get_code_store
from shop_relay.services.reconciliation import IdentityReconciler
from shop_relay.services.relay_client import RelayClient
from shop_relay.services.shopify_auth import get_current_shop
from shop_relay.services.link_handlers import (
    account_overview as svc_account_overview,
    assign_plan as svc_assign_plan,
    disconnect as svc_disconnect,
    generate_sso_link as svc_generate_sso_link,
    initialize_account as svc_initialize_account,
    issue_api_key as svc_issue_api_key,
    linkage_status as svc_linkage_status,
    list_packages as svc_list_packages,
    list_senders as svc_list_senders,
    request_password_reset as svc_request_password_reset,
    revoke_api_keys as svc_revoke_api_keys,
    save_notification_settings as svc_save_notification_settings,
    verify_code_and_link as svc_verify_code_and_link,
)

router = APIRouter()


async def get_relay_client():
    async with RelayClient() as relay:
        yield relay


def get_reconciler(
    relay: RelayClient = Depends(get_relay_client),
    code_store: VerificationCodeStore = Depends(get_code_store),
) -> IdentityReconciler:
    return IdentityReconciler(relay, code_store)


# Current linkage of the requesting shop
@router.get("/linkage")
def get_linkage(shop: str = Depends(get_current_shop), db: Session = Depends(get_db)):
    return svc_linkage_status(db, shop)


# Find or create the relay account and email a verification code
@router.post("/initialize-account")
async def initialize_account(
    request: InitializeAccountRequest,
    shop: str = Depends(get_current_shop),
    reconciler: IdentityReconciler = Depends(get_reconciler),
):
    return await svc_initialize_account(reconciler, request.email, request.name)


# Prove email ownership and link the account to the shop
@router.post("/verify-code")
async def verify_code(
    request: VerifyCodeRequest,
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
    reconciler: IdentityReconciler = Depends(get_reconciler),
):
    return await svc_verify_code_and_link(db, reconciler, relay, shop, request.email, request.code)


@router.post("/generate-sso-link")
async def generate_sso_link(
    request: SsoLinkRequest,
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
):
    return await svc_generate_sso_link(db, relay, shop, request.user_id, request.redirect_path)


@router.post("/issue-api-key")
async def issue_api_key(
    request: IssueApiKeyRequest,
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
):
    return await svc_issue_api_key(db, relay, shop, request.user_id, request.name, request.permissions)


@router.post("/revoke-api-keys")
async def revoke_api_keys(
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
):
    return await svc_revoke_api_keys(db, relay, shop)


@router.get("/packages")
async def list_packages(shop: str = Depends(get_current_shop), relay: RelayClient = Depends(get_relay_client)):
    return await svc_list_packages(relay)


@router.post("/assign-plan")
async def assign_plan(
    request: AssignPlanRequest,
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
):
    return await svc_assign_plan(db, relay, shop, request.plan_id, request.plan_name, request.duration_months)


# Relay recovery email, the way out of an account collision
@router.post("/password-reset")
async def password_reset(
    request: PasswordResetRequest,
    shop: str = Depends(get_current_shop),
    relay: RelayClient = Depends(get_relay_client),
):
    return await svc_request_password_reset(relay, request.email)


@router.post("/disconnect")
def disconnect(shop: str = Depends(get_current_shop), db: Session = Depends(get_db)):
    return svc_disconnect(db, shop)


@router.put("/notifications")
def save_notifications(
    request: NotificationSettingsRequest,
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return svc_save_notification_settings(db, shop, request.model_dump(exclude_unset=True))


# Credits and active subscription, read with the shop's stored API secret
@router.get("/account")
async def account(
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
):
    return await svc_account_overview(db, relay, shop)


# SMS devices and WhatsApp accounts to pick the notification sender from
@router.get("/senders")
async def senders(
    shop: str = Depends(get_current_shop),
    db: Session = Depends(get_db),
    relay: RelayClient = Depends(get_relay_client),
):
    return await svc_list_senders(db, relay, shop)
