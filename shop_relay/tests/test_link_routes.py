import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
from fastapi.testclient import TestClient

from shop_relay.api.link_routes import get_reconciler, get_relay_client
from shop_relay.db.session import get_db
from shop_relay.main import app
from shop_relay.models.shop_linkage import ShopLinkage
from shop_relay.models.verification_lockout import VerificationLockout
from shop_relay.services.code_store import InMemoryCodeStore
from shop_relay.services.identity import DegradedIdentity, RealIdentity, UserLookup
from shop_relay.services.link_handlers import DEFAULT_PERMISSIONS, VERIFY_LOCKOUT_MINUTES
from shop_relay.services.reconciliation import IdentityReconciler
from shop_relay.services.relay_client import ApiKey
from shop_relay.services.relay_errors import RelayAlreadyExists, RelayNotConfigured, RelayUpstreamUnavailable
from shop_relay.services.settings_store import upsert_linkage
from shop_relay.services.shopify_auth import get_current_shop

SHOP = "demo-store.myshopify.com"
EMAIL = "merchant@shop.com"


@pytest.fixture
def relay():
    relay = MagicMock()
    relay.admin_configured = True
    relay.lookup_user = AsyncMock(return_value=UserLookup.not_found())
    relay.create_account = AsyncMock(return_value=RealIdentity(user_id=42, email=EMAIL))
    relay.issue_api_key = AsyncMock(return_value=ApiKey(id=5, secret="s3cret", name="Shopify API Key"))
    relay.assign_plan = AsyncMock(return_value=None)
    relay.create_sso_link = AsyncMock(return_value="https://hoprelay.com/sso?t=abc")
    relay.delete_all_api_keys = AsyncMock(return_value=1)
    relay.list_packages = AsyncMock(return_value=[{"id": 3, "name": "Starter"}])
    relay.request_password_reset = AsyncMock(return_value=None)
    return relay


@pytest.fixture
def store(clock):
    return InMemoryCodeStore(clock=clock)


@pytest.fixture
def client(session_factory, relay, store, notifier):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_shop] = lambda: SHOP
    app.dependency_overrides[get_relay_client] = lambda: relay
    app.dependency_overrides[get_reconciler] = lambda: IdentityReconciler(relay, store, notifier=notifier)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def linked(db):
    upsert_linkage(db, SHOP, relay_user_id=42, relay_user_email=EMAIL)


@pytest.fixture
def linked_degraded(db):
    upsert_linkage(db, SHOP, identity_degraded=True, relay_user_email=EMAIL)


def sent_code(notifier):
    return notifier.send_verification_code.await_args.args[1]


def initialize(client, email=EMAIL):
    return client.post("/relay/initialize-account", json={"email": email, "name": "Jane"})


# ---- initialize / verify ----

def test_initialize_new_account(client, relay):
    response = initialize(client)
    assert response.status_code == 200
    body = response.json()
    assert body["isNewUser"] is True
    assert body["codeIssued"] is True
    assert len(body["generatedPassword"]) == 20
    relay.create_account.assert_awaited_once()


def test_initialize_existing_account(client, relay):
    relay.lookup_user.return_value = UserLookup.found(MagicMock(id=42))
    body = initialize(client).json()
    assert body["isNewUser"] is False
    assert "generatedPassword" not in body
    relay.create_account.assert_not_awaited()


def test_initialize_collision_degrades(client, relay):
    relay.create_account.side_effect = RelayAlreadyExists("This email is already registered.")
    body = initialize(client).json()
    assert body["isNewUser"] is False
    assert body["identityDegraded"] is True
    assert body["codeIssued"] is True


def test_initialize_upstream_failure(client, relay):
    relay.create_account.side_effect = RelayUpstreamUnavailable("Relay provider timed out. Please try again.")
    response = initialize(client)
    assert response.status_code == 502
    assert response.json()["detail"] == "Relay provider timed out. Please try again."


def test_initialize_rejects_invalid_email(client):
    assert initialize(client, "not-an-email").status_code == 422


def test_verify_links_shop_and_provisions_key(client, relay, notifier):
    initialize(client)
    response = client.post("/relay/verify-code", json={"email": EMAIL, "code": sent_code(notifier)})

    assert response.status_code == 200
    body = response.json()
    assert body["userId"] == 42
    assert body["identityDegraded"] is False
    assert body["provisioning"]["apiKey"] == "issued"
    relay.issue_api_key.assert_awaited_once_with(RealIdentity(user_id=42, email=EMAIL), "Shopify API Key", DEFAULT_PERMISSIONS)

    status = client.get("/relay/linkage")
    assert status.json()["linked"] is True
    assert status.json()["hasApiKey"] is True
    assert "s3cret" not in status.text


def test_verify_degraded_identity_skips_provisioning(client, relay, notifier, db):
    relay.create_account.return_value = DegradedIdentity(email=EMAIL)
    initialize(client)
    body = client.post("/relay/verify-code", json={"email": EMAIL, "code": sent_code(notifier)}).json()

    assert body["userId"] is None
    assert body["identityDegraded"] is True
    assert body["provisioning"]["apiKey"] == "manual"
    relay.issue_api_key.assert_not_awaited()

    row = db.query(ShopLinkage).filter_by(shop=SHOP).first()
    assert row.relay_user_id is None
    assert row.identity_degraded is True


def test_verify_provisioning_failure_keeps_linkage(client, relay, notifier):
    relay.issue_api_key.side_effect = RelayUpstreamUnavailable("down")
    initialize(client)
    response = client.post("/relay/verify-code", json={"email": EMAIL, "code": sent_code(notifier)})

    assert response.status_code == 200
    assert response.json()["provisioning"]["apiKey"] == "failed"
    assert client.get("/relay/linkage").json()["linked"] is True


def test_verify_error_statuses(client, notifier, clock):
    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": "123456"}).status_code == 404

    initialize(client)
    code = sent_code(notifier)
    wrong = "000000" if code != "000000" else "111111"
    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": wrong}).status_code == 400

    clock.advance(minutes=11)
    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": code}).status_code == 410
    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": code}).status_code == 404


def test_verify_locks_after_repeated_mismatches(client, notifier):
    initialize(client)
    code = sent_code(notifier)
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(4):
        assert client.post("/relay/verify-code", json={"email": EMAIL, "code": wrong}).status_code == 400
    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": wrong}).status_code == 403
    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": code}).status_code == 403


def test_old_failures_fall_out_of_the_lockout_window(client, notifier, db):
    initialize(client)
    code = sent_code(notifier)
    wrong = "000000" if code != "000000" else "111111"
    db.add(VerificationLockout(
        email=EMAIL,
        failed_attempts=4,
        first_failed_at=datetime.now(timezone.utc) - timedelta(minutes=VERIFY_LOCKOUT_MINUTES + 1),
    ))
    db.commit()

    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": wrong}).status_code == 400

    db.expire_all()
    assert db.query(VerificationLockout).filter_by(email=EMAIL).first().failed_attempts == 1
    assert client.post("/relay/verify-code", json={"email": EMAIL, "code": code}).status_code == 200


# ---- SSO and API keys ----

def test_sso_link_for_linked_user(client, relay, linked):
    response = client.post("/relay/generate-sso-link", json={"userId": 42, "redirectPath": "dashboard"})
    assert response.status_code == 200
    assert response.json()["url"] == "https://hoprelay.com/sso?t=abc"
    relay.create_sso_link.assert_awaited_once_with(RealIdentity(user_id=42, email=EMAIL), "dashboard")


def test_sso_link_refuses_foreign_user(client, relay, linked):
    response = client.post("/relay/generate-sso-link", json={"userId": 43})
    assert response.status_code == 403
    relay.create_sso_link.assert_not_awaited()


def test_sso_link_requires_linkage(client):
    assert client.post("/relay/generate-sso-link", json={}).status_code == 404


def test_issue_api_key(client, relay, linked):
    response = client.post("/relay/issue-api-key", json={"userId": 42, "name": "Shopify API Key", "permissions": ["get_credits", "sms_send"]})
    assert response.status_code == 200
    assert response.json()["apiKeyId"] == 5
    assert response.json()["secret"] == "s3cret"

    again = client.post("/relay/issue-api-key", json={"userId": 42})
    assert again.status_code == 409


def test_issue_api_key_rejects_unknown_permission(client, linked):
    response = client.post("/relay/issue-api-key", json={"permissions": ["delete_everything"]})
    assert response.status_code == 422


def test_issue_api_key_with_sentinel_on_real_linkage(client, relay, linked):
    assert client.post("/relay/issue-api-key", json={"userId": 999999}).status_code == 403
    relay.issue_api_key.assert_not_awaited()


def test_issue_api_key_for_degraded_account_points_to_dashboard(client, linked_degraded, make_relay):
    app.dependency_overrides[get_relay_client] = lambda: make_relay()

    response = client.post("/relay/issue-api-key", json={"userId": 999999})

    assert response.status_code == 403
    assert "dashboard" in response.json()["detail"]


def test_revoke_api_keys(client, relay, db, linked):
    upsert_linkage(db, SHOP, api_key_id=5, api_key_name="Shopify API Key", api_secret="s3cret", sms_enabled=True)

    response = client.post("/relay/revoke-api-keys")

    assert response.json() == {"status": "success", "deleted": 1}
    db.expire_all()
    row = db.query(ShopLinkage).filter_by(shop=SHOP).first()
    assert row.api_key_id is None and row.api_secret is None
    assert row.relay_user_id == 42


def test_disconnect(client, linked):
    assert client.post("/relay/disconnect").status_code == 200
    assert client.get("/relay/linkage").json()["linked"] is False


# ---- plans and settings ----

def test_packages_and_assign_plan(client, relay, linked):
    assert client.get("/relay/packages").json()["packages"] == [{"id": 3, "name": "Starter"}]

    response = client.post("/relay/assign-plan", json={"planId": 3, "planName": "Starter"})
    assert response.status_code == 200
    relay.assign_plan.assert_awaited_once_with(RealIdentity(user_id=42, email=EMAIL), 3, 1)
    assert client.get("/relay/linkage").json()["planName"] == "Starter"


def test_assign_plan_without_admin(client, relay, linked):
    relay.assign_plan.side_effect = RelayNotConfigured("Relay admin API is not configured.")
    assert client.post("/relay/assign-plan", json={"planId": 3}).status_code == 503


def test_password_reset(client, relay):
    response = client.post("/relay/password-reset", json={"email": "Merchant@Shop.com"})
    assert response.status_code == 200
    relay.request_password_reset.assert_awaited_once_with(EMAIL)


def test_save_notifications(client, linked):
    response = client.put("/relay/notifications", json={"notificationChannel": "whatsapp", "defaultWaAccount": "wa-1"})
    assert response.status_code == 200
    assert response.json()["notificationChannel"] == "whatsapp"
    assert response.json()["defaultWaAccount"] == "wa-1"
    assert response.json()["notifyOrderCreated"] is True


def test_save_notifications_rejects_unknown_channel(client):
    assert client.put("/relay/notifications", json={"notificationChannel": "pigeon"}).status_code == 422


# ---- account overview and senders ----

@pytest.fixture
def linked_with_key(db, linked):
    upsert_linkage(db, SHOP, api_key_id=5, api_key_name="Shopify API Key", api_secret="s3cret", plan_id=1, plan_name="Free")


def test_account_overview_syncs_active_plan(client, relay, db, linked_with_key):
    relay.get_credits = AsyncMock(return_value={"credits": "120.50", "currency": "USD"})
    relay.get_subscription = AsyncMock(return_value={"name": "Starter", "package": "3", "usage": {"sent": 7}})

    response = client.get("/relay/account")

    assert response.status_code == 200
    body = response.json()
    assert (body["credits"], body["currency"]) == ("120.50", "USD")
    assert (body["planId"], body["planName"]) == (3, "Starter")
    relay.get_credits.assert_awaited_once_with("s3cret")

    db.expire_all()
    row = db.query(ShopLinkage).filter_by(shop=SHOP).first()
    assert (row.plan_id, row.plan_name) == (3, "Starter")


def test_account_overview_without_subscription_keeps_stored_plan(client, relay, linked_with_key):
    relay.get_credits = AsyncMock(return_value=None)
    relay.get_subscription = AsyncMock(return_value=None)

    body = client.get("/relay/account").json()

    assert body["credits"] is None
    assert (body["planId"], body["planName"]) == (1, "Free")


def test_account_overview_requires_api_key(client, linked):
    assert client.get("/relay/account").status_code == 409


def test_account_overview_upstream_failure(client, relay, linked_with_key):
    relay.get_credits = AsyncMock(side_effect=RelayUpstreamUnavailable("Relay provider timed out. Please try again."))
    relay.get_subscription = AsyncMock(return_value=None)
    assert client.get("/relay/account").status_code == 502


def test_senders_lists_devices_and_whatsapp_accounts(client, relay, linked_with_key):
    relay.get_devices = AsyncMock(return_value=[{"unique": "dev-1", "name": "Pixel"}])
    relay.get_wa_accounts = AsyncMock(return_value=[{"unique": "wa-1", "phone": "+15550001111"}])

    response = client.get("/relay/senders")

    assert response.status_code == 200
    assert response.json()["devices"] == [{"unique": "dev-1", "name": "Pixel"}]
    assert response.json()["waAccounts"] == [{"unique": "wa-1", "phone": "+15550001111"}]
    relay.get_wa_accounts.assert_awaited_once_with("s3cret")


def test_senders_require_linkage(client):
    assert client.get("/relay/senders").status_code == 404


# ---- session token ----

def session_token(secret="shpss_secret", dest="https://Other-Store.myshopify.com"):
    now = int(time.time())
    return jwt.encode({"dest": dest, "aud": "api-key", "iat": now, "exp": now + 60}, secret, algorithm="HS256")


def test_session_token_identifies_shop(client, monkeypatch):
    monkeypatch.setattr("shop_relay.services.shopify_auth.SHOPIFY_API_KEY", "api-key")
    monkeypatch.setattr("shop_relay.services.shopify_auth.SHOPIFY_API_SECRET", "shpss_secret")
    del app.dependency_overrides[get_current_shop]

    response = client.get("/relay/linkage", headers={"Authorization": f"Bearer {session_token()}"})

    assert response.status_code == 200
    assert response.json()["shop"] == "other-store.myshopify.com"


def test_session_token_with_bad_signature(client, monkeypatch):
    monkeypatch.setattr("shop_relay.services.shopify_auth.SHOPIFY_API_KEY", "api-key")
    monkeypatch.setattr("shop_relay.services.shopify_auth.SHOPIFY_API_SECRET", "shpss_secret")
    del app.dependency_overrides[get_current_shop]

    response = client.get("/relay/linkage", headers={"Authorization": f"Bearer {session_token(secret='forged')}"})
    assert response.status_code == 401

    assert client.get("/relay/linkage").status_code in (401, 403)
