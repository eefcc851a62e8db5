"""
Relay provider client
Typed async wrapper over the provider's admin, public web and secret-scoped APIs
"""
import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv

from shop_relay.services.identity import (
    LEGACY_DEGRADED_USER_ID,
    DegradedIdentity,
    LookupOutcome,
    RealIdentity,
    RelayIdentity,
    RelayUser,
    UserLookup,
    normalize_email,
)
from shop_relay.services.login_probe import probe_login
from shop_relay.services.relay_errors import (
    RelayAlreadyExists,
    RelayError,
    RelayForbidden,
    RelayInvalidCredentials,
    RelayInvalidInput,
    RelayNotConfigured,
    RelayNotFound,
    RelayUpstreamUnavailable,
)

load_dotenv()

logger = logging.getLogger(__name__)


def _env_token(name: str) -> str:
    value = os.getenv(name, "").strip()
    # sample .env files ship "your_..._here" placeholders
    if value.startswith("your_"):
        return ""
    return value


RELAY_ADMIN_BASE_URL = os.getenv("RELAY_ADMIN_BASE_URL", "https://hoprelay.com/admin").rstrip("/")
RELAY_API_BASE_URL = os.getenv("RELAY_API_BASE_URL", "https://hoprelay.com/api").rstrip("/")
RELAY_WEB_BASE_URL = (os.getenv("RELAY_WEB_BASE_URL") or re.sub(r"/admin/?$", "", RELAY_ADMIN_BASE_URL)).rstrip("/")
RELAY_ADMIN_TOKEN = _env_token("RELAY_ADMIN_TOKEN")
RELAY_SSO_PLUGIN_TOKEN = _env_token("RELAY_SSO_PLUGIN_TOKEN")

DEFAULT_COUNTRY = os.getenv("RELAY_DEFAULT_COUNTRY", "US")
DEFAULT_TIMEZONE = os.getenv("RELAY_DEFAULT_TIMEZONE", "America/New_York")
DEFAULT_LANGUAGE_ID = os.getenv("RELAY_DEFAULT_LANGUAGE_ID", "1")
DEFAULT_ROLE_ID = os.getenv("RELAY_DEFAULT_ROLE_ID", "2")

RELAY_HTTP_TIMEOUT = float(os.getenv("RELAY_HTTP_TIMEOUT", "15"))
RELAY_USER_SEARCH_MAX_PAGES = int(os.getenv("RELAY_USER_SEARCH_MAX_PAGES", "200"))
RELAY_REGISTRATION_SETTLE_SECONDS = float(os.getenv("RELAY_REGISTRATION_SETTLE_SECONDS", "1.0"))

USER_PAGE_SIZE = 250
API_KEY_PAGE_SIZE = 100
ALREADY_REGISTERED_MESSAGE = "Invalid Parameters!"
ALREADY_REGISTERED_USER_MESSAGE = (
    "This email is already registered with the relay provider. "
    "Reset the password or sign in with the existing account."
)
REGISTRATION_TAKEN_MARKERS = ("already", "has been taken", "exists")

SSO_REDIRECT_PATTERN = re.compile(r"^[a-zA-Z0-9/_-]+$")
SSO_REDIRECT_MAX_LENGTH = 100
SSO_DEFAULT_HOSTS = {"hoprelay.com", "www.hoprelay.com"}
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

DASHBOARD_REMEDY = "Please complete this step manually in your relay provider dashboard."


@dataclass(frozen=True)
class ApiKey:
    id: int
    secret: str
    name: Optional[str] = None


class RelayClient:
    """Relay provider client.

    Privileged operations (user listing, creation, API keys, plans) need the
    admin token. Without it, lookups degrade to an indeterminate answer and
    privileged writes raise RelayNotConfigured.
    """

    def __init__(
        self,
        admin_base_url: Optional[str] = None,
        api_base_url: Optional[str] = None,
        web_base_url: Optional[str] = None,
        admin_token: Optional[str] = None,
        sso_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        registration_settle_seconds: Optional[float] = None,
        max_search_pages: Optional[int] = None,
    ):
        self.admin_base_url = (admin_base_url or RELAY_ADMIN_BASE_URL).rstrip("/")
        self.api_base_url = (api_base_url or RELAY_API_BASE_URL).rstrip("/")
        if web_base_url:
            self.web_base_url = web_base_url.rstrip("/")
        elif admin_base_url:
            self.web_base_url = re.sub(r"/admin/?$", "", self.admin_base_url)
        else:
            self.web_base_url = RELAY_WEB_BASE_URL
        self.admin_token = RELAY_ADMIN_TOKEN if admin_token is None else admin_token
        self.sso_token = RELAY_SSO_PLUGIN_TOKEN if sso_token is None else sso_token
        self.timeout = timeout or RELAY_HTTP_TIMEOUT
        self.registration_settle_seconds = (
            RELAY_REGISTRATION_SETTLE_SECONDS if registration_settle_seconds is None else registration_settle_seconds
        )
        self.max_search_pages = max_search_pages or RELAY_USER_SEARCH_MAX_PAGES
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def admin_configured(self) -> bool:
        return bool(self.admin_token)

    def _new_http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @property
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._new_http()
        return self._client

    def _require_admin(self, remedy: str = DASHBOARD_REMEDY):
        if not self.admin_configured:
            raise RelayNotConfigured(f"Relay admin API is not configured. {remedy}")

    @staticmethod
    def _real_user_id(user: Union[RelayIdentity, int], action: str) -> int:
        if isinstance(user, DegradedIdentity) or (not isinstance(user, RealIdentity) and user == LEGACY_DEGRADED_USER_ID):
            raise RelayForbidden(
                f"Cannot {action} automatically because your relay account was verified "
                f"without a provider user id. {DASHBOARD_REMEDY}"
            )
        user_id = user.user_id if isinstance(user, RealIdentity) else user
        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise RelayInvalidInput("Invalid user ID")
        return user_id

    async def _request(self, method: str, url: str, client: Optional[httpx.AsyncClient] = None, **kwargs) -> httpx.Response:
        http = client or self._http
        try:
            return await http.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise RelayUpstreamUnavailable("Relay provider timed out. Please try again.")
        except httpx.HTTPError as e:
            raise RelayUpstreamUnavailable(f"Cannot reach relay provider: {e}")

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise RelayUpstreamUnavailable(
                "Unable to parse relay provider response.",
                details={"status_code": response.status_code},
            )

    @classmethod
    def _parse_json(cls, response: httpx.Response) -> Dict[str, Any]:
        payload = cls._decode(response)
        body = payload if isinstance(payload, dict) else {"data": payload}
        status = body.get("status")

        if response.is_success and (status is None or status == 200):
            return body

        code = status if isinstance(status, int) else response.status_code
        message = body.get("message") if isinstance(body.get("message"), str) else None
        message = message or f"Relay request failed with status {code}"

        if code == 401:
            raise RelayInvalidCredentials(message, details=body)
        if code == 403:
            raise RelayForbidden(message, details=body)
        if code == 404:
            raise RelayNotFound(message, details=body)
        raise RelayUpstreamUnavailable(message, details=body)

    @staticmethod
    def _records(body: Dict[str, Any], what: str) -> List[Dict[str, Any]]:
        """The `data` list of a listing response, keeping only object entries."""
        data = body.get("data")
        if data is None:
            return []
        if not isinstance(data, list):
            raise RelayUpstreamUnavailable(f"Unexpected {what} listing from relay provider.", details=body)
        return [record for record in data if isinstance(record, dict)]

    @staticmethod
    def _record_id(value: Any, what: str) -> int:
        try:
            record_id = int(value)
        except (TypeError, ValueError):
            raise RelayUpstreamUnavailable(f"Relay provider returned an invalid {what} id: {value!r}")
        if record_id <= 0:
            raise RelayUpstreamUnavailable(f"Relay provider returned an invalid {what} id: {value!r}")
        return record_id

    # ---- account lookup ----

    async def lookup_user(self, email: str, max_pages: Optional[int] = None) -> UserLookup:
        """Scan the admin user listing for an email.

        The provider has no lookup-by-email endpoint. Returns INDETERMINATE
        when the admin capability is missing or the page cap runs out before
        the listing does.
        """
        if not self.admin_configured:
            logger.info("Relay admin token not configured, skipping user lookup")
            return UserLookup.indeterminate()

        target = normalize_email(email)
        pages = max_pages or self.max_search_pages

        for page in range(1, pages + 1):
            response = await self._request(
                "GET",
                f"{self.admin_base_url}/get/users",
                params={"token": self.admin_token, "limit": USER_PAGE_SIZE, "page": page},
            )
            body = self._parse_json(response)
            users = self._records(body, "user")
            page_length = len(body.get("data") or [])
            logger.debug(f"User lookup page {page}: {page_length} users")

            if not page_length:
                return UserLookup.not_found()

            for user in users:
                user_email = user.get("email")
                if isinstance(user_email, str) and user_email.lower() == target and user.get("id") is not None:
                    user_id = self._record_id(user["id"], "user")
                    logger.info(f"Relay user found on page {page}: {user_id}")
                    return UserLookup.found(RelayUser(id=user_id, email=user_email, name=user.get("name")))

            if page_length < USER_PAGE_SIZE:
                return UserLookup.not_found()

        logger.warning(f"User lookup stopped at page cap ({pages}) without reaching the end of the listing")
        return UserLookup.indeterminate()

    async def find_user_by_email(self, email: str, max_pages: Optional[int] = None) -> Optional[RelayUser]:
        return (await self.lookup_user(email, max_pages=max_pages)).user

    # ---- account creation ----

    async def _register_publicly(self, name: str, email: str, password: str) -> str:
        """Submit the public sign-up form. Returns "created", "exists" or "rejected"."""
        async with self._new_http() as http:
            try:
                response = await self._request(
                    "POST",
                    f"{self.web_base_url}/auth/register",
                    client=http,
                    data={"name": name, "email": email, "password": password, "terms": "1"},
                    follow_redirects=False,
                )
            except RelayUpstreamUnavailable as e:
                logger.warning(f"Public registration unavailable: {e.message}")
                return "rejected"

        if response.status_code in (301, 302, 303):
            location = response.headers.get("location", "")
            return "rejected" if "/auth/register" in location else "created"
        if response.status_code == 200:
            html = response.text
            # a re-rendered form means the registration was refused
            if 'name="password"' not in html:
                return "created"
            lowered = html.lower()
            if any(marker in lowered for marker in REGISTRATION_TAKEN_MARKERS):
                return "exists"
            return "rejected"
        logger.warning(f"Public registration rejected with status {response.status_code}")
        return "rejected"

    async def _create_with_admin(self, name: str, email: str, password: str) -> RealIdentity:
        response = await self._request(
            "POST",
            f"{self.admin_base_url}/create/user",
            data={
                "token": self.admin_token,
                "name": name,
                "email": email,
                "password": password,
                "credits": "0",
                "timezone": DEFAULT_TIMEZONE,
                "country": DEFAULT_COUNTRY,
                "language": DEFAULT_LANGUAGE_ID,
                "theme": "light",
                "role": DEFAULT_ROLE_ID,
            },
        )
        payload = self._decode(response)
        if isinstance(payload, dict) and payload.get("status") == 400 and payload.get("message") == ALREADY_REGISTERED_MESSAGE:
            raise RelayAlreadyExists(ALREADY_REGISTERED_USER_MESSAGE, details=payload)

        data = self._parse_json(response).get("data") or {}
        if not isinstance(data, dict) or data.get("id") is None:
            raise RelayUpstreamUnavailable("Relay provider did not return the new user id.", details=payload)
        return RealIdentity(user_id=self._record_id(data["id"], "user"), email=email)

    async def create_account(self, name: str, email: str, password: str) -> RelayIdentity:
        """Create a relay account, public registration first, admin API second.

        Public registration does not return an id, so the new account is looked
        up afterwards. When a complete listing does not show it, registration
        is treated as failed and the admin API is tried. When the listing cannot
        be completed, the account is assumed to exist and a DegradedIdentity is
        returned.
        """
        outcome = await self._register_publicly(name, email, password)
        if outcome == "created":
            logger.info(f"Public registration accepted for {email}")
            if self.registration_settle_seconds:
                await asyncio.sleep(self.registration_settle_seconds)
            try:
                lookup = await self.lookup_user(email)
            except RelayError as e:
                logger.warning(f"Could not resolve id after registration for {email}: {e.message}")
                lookup = UserLookup.indeterminate()
            if lookup.user:
                return RealIdentity(user_id=lookup.user.id, email=email)
            if lookup.outcome == LookupOutcome.INDETERMINATE:
                logger.warning(f"Registered {email} but the listing is incomplete, using degraded identity")
                return DegradedIdentity(email=email)
            logger.warning(f"Registration of {email} reported success but the account is not listed, trying admin API")
        elif outcome == "exists":
            raise RelayAlreadyExists(ALREADY_REGISTERED_USER_MESSAGE)

        self._require_admin("Please create your relay account manually and link it again.")

        identity = await self._create_with_admin(name, email, password)
        logger.info(f"Relay user created via admin API: {identity.user_id}")
        return identity

    async def verify_password(self, email: str, password: str) -> bool:
        async with self._new_http() as http:
            return await probe_login(http, self.web_base_url, email, password)

    async def request_password_reset(self, email: str) -> None:
        response = await self._request(
            "POST",
            f"{self.web_base_url}/auth/recovery",
            data={"email": email},
            follow_redirects=False,
        )
        if response.status_code >= 400:
            raise RelayUpstreamUnavailable(f"Failed to send password reset email: {response.status_code}")

    # ---- API keys and plans ----

    async def issue_api_key(self, user: Union[RelayIdentity, int], name: str, permissions: Iterable[str]) -> ApiKey:
        user_id = self._real_user_id(user, "create an API key")
        self._require_admin("Please create an API key manually in your relay provider dashboard.")

        response = await self._request(
            "POST",
            f"{self.admin_base_url}/create/apikey",
            data={"token": self.admin_token, "id": str(user_id), "name": name, "permissions[]": list(permissions)},
        )
        data = self._parse_json(response).get("data") or {}
        if not isinstance(data, dict) or data.get("id") is None or not data.get("secret"):
            raise RelayUpstreamUnavailable("Relay provider did not return the API key.")
        logger.info(f"API key {data['id']} issued for relay user {user_id}")
        return ApiKey(id=self._record_id(data["id"], "API key"), secret=data["secret"], name=name)

    async def list_api_keys(self, user: Union[RelayIdentity, int]) -> List[Dict[str, Any]]:
        user_id = self._real_user_id(user, "list API keys")
        self._require_admin()
        response = await self._request(
            "GET",
            f"{self.admin_base_url}/get/apikeys",
            params={"token": self.admin_token, "user": user_id, "limit": API_KEY_PAGE_SIZE},
        )
        return self._records(self._parse_json(response), "API key")

    async def delete_api_key(self, key_id: int) -> None:
        self._require_admin()
        response = await self._request(
            "POST",
            f"{self.admin_base_url}/delete/apikey",
            data={"token": self.admin_token, "id": str(key_id)},
        )
        self._parse_json(response)

    async def delete_all_api_keys(self, user: Union[RelayIdentity, int]) -> int:
        """Revoke every key of a user concurrently. Returns how many were deleted."""
        key_ids = [self._record_id(key.get("id"), "API key") for key in await self.list_api_keys(user)]
        if not key_ids:
            return 0

        results = await asyncio.gather(
            *(self.delete_api_key(key_id) for key_id in key_ids),
            return_exceptions=True,
        )
        deleted = 0
        for key_id, result in zip(key_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to delete API key {key_id}: {result}")
            else:
                deleted += 1
        logger.info(f"Deleted {deleted}/{len(key_ids)} API key(s)")
        return deleted

    async def assign_plan(self, user: Union[RelayIdentity, int], plan_id: int, duration_months: int = 1) -> Any:
        user_id = self._real_user_id(user, "create a subscription")
        if isinstance(plan_id, bool) or not isinstance(plan_id, int) or plan_id <= 0:
            raise RelayInvalidInput("Please select a valid pricing plan.")
        if isinstance(duration_months, bool) or not isinstance(duration_months, int) or duration_months <= 0:
            raise RelayInvalidInput("Invalid subscription duration.")
        self._require_admin("Please manage subscriptions manually in your relay provider dashboard.")

        response = await self._request(
            "POST",
            f"{self.admin_base_url}/create/subscription",
            data={
                "token": self.admin_token,
                "user": str(user_id),
                "package": str(plan_id),
                "duration": str(duration_months),
            },
        )
        logger.info(f"Plan {plan_id} assigned to relay user {user_id} for {duration_months} month(s)")
        return self._parse_json(response).get("data")

    async def list_packages(self) -> List[Dict[str, Any]]:
        self._require_admin()
        response = await self._request(
            "GET",
            f"{self.admin_base_url}/get/packages",
            params={"token": self.admin_token, "limit": 10, "page": 1},
        )
        return self._records(self._parse_json(response), "package")

    # ---- SSO ----

    def _allowed_sso_hosts(self) -> set:
        hosts = set(SSO_DEFAULT_HOSTS)
        for base in (re.sub(r"/admin/?$", "", self.admin_base_url), self.web_base_url):
            host = urlparse(base).hostname
            if host:
                hosts.add(host)
        return hosts

    def _validate_sso_url(self, url: str) -> str:
        try:
            parsed = urlparse(url)
        except ValueError:
            raise RelayInvalidInput("Invalid SSO URL received from server")

        host = parsed.hostname
        if not host or host not in self._allowed_sso_hosts():
            logger.error(f"SSO URL from unauthorized host: {host}")
            raise RelayInvalidInput("Invalid SSO URL received from server")
        if parsed.scheme != "https" and not (host in LOCAL_HOSTS and parsed.scheme == "http"):
            logger.error(f"SSO URL with disallowed scheme {parsed.scheme} for host {host}")
            raise RelayInvalidInput("Invalid SSO URL received from server")
        return url

    async def create_sso_link(self, user: Union[RelayIdentity, int], redirect_path: str = "dashboard") -> str:
        user_id = self._real_user_id(user, "open the relay dashboard")

        if (
            not isinstance(redirect_path, str)
            or len(redirect_path) > SSO_REDIRECT_MAX_LENGTH
            or not SSO_REDIRECT_PATTERN.match(redirect_path)
            or ".." in redirect_path
            or redirect_path.startswith("/")
        ):
            logger.warning(f"Rejected SSO redirect path: {redirect_path!r}")
            raise RelayInvalidInput("Invalid redirect path")

        if not self.sso_token:
            raise RelayNotConfigured("Relay SSO is not configured.")

        response = await self._request(
            "GET",
            f"{self.web_base_url}/plugin",
            params={
                "name": "shopify-sso",
                "action": "sso_link",
                "user": str(user_id),
                "token": self.sso_token,
                "redirect": redirect_path,
            },
            follow_redirects=False,
        )
        body = self._decode(response)
        data = body.get("data") if isinstance(body, dict) else None
        sso_url = (data or {}).get("url") if isinstance(data, dict) else None
        sso_url = sso_url or (body.get("url") if isinstance(body, dict) else None)

        if not response.is_success or not sso_url:
            self._parse_json(response)
            raise RelayUpstreamUnavailable("Relay SSO link request failed.", details=body)

        return self._validate_sso_url(sso_url)

    # ---- secret-scoped API ----

    async def _fetch_with_secret(self, endpoint: str, secret: str) -> Dict[str, Any]:
        url = f"{self.api_base_url}{endpoint}"
        response = await self._request("POST", url, data={"secret": secret})
        if response.status_code in (404, 405):
            # some read endpoints only answer GET
            response = await self._request("GET", url, params={"secret": secret})
        return self._parse_json(response)

    async def get_credits(self, secret: str) -> Optional[Dict[str, Any]]:
        return (await self._fetch_with_secret("/get/credits", secret)).get("data")

    async def get_subscription(self, secret: str) -> Optional[Dict[str, Any]]:
        return (await self._fetch_with_secret("/get/subscription", secret)).get("data")

    async def get_devices(self, secret: str) -> List[Dict[str, Any]]:
        """Android gateway devices available for SMS."""
        return self._records(await self._fetch_with_secret("/get/devices", secret), "device")

    async def get_wa_accounts(self, secret: str) -> List[Dict[str, Any]]:
        return self._records(await self._fetch_with_secret("/get/wa.accounts", secret), "WhatsApp account")

    async def send_sms(
        self,
        secret: str,
        phone: str,
        message: str,
        mode: str = "devices",
        device: Optional[str] = None,
        sim: Optional[int] = None,
        gateway: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> Dict[str, Any]:
        form = {"secret": secret, "mode": mode, "phone": phone, "message": message}
        if device:
            form["device"] = device
        if gateway:
            form["gateway"] = gateway
        if sim:
            form["sim"] = str(sim)
        if priority is not None:
            form["priority"] = str(priority)
        response = await self._request("POST", f"{self.api_base_url}/send/sms", data=form)
        return self._parse_json(response)

    async def send_whatsapp(
        self,
        secret: str,
        account: str,
        recipient: str,
        message: str,
        message_type: str = "text",
        priority: Optional[int] = None,
    ) -> Dict[str, Any]:
        form = {"secret": secret, "account": account, "recipient": recipient, "type": message_type, "message": message}
        if priority is not None:
            form["priority"] = str(priority)
        response = await self._request("POST", f"{self.api_base_url}/send/whatsapp", data=form)
        return self._parse_json(response)
