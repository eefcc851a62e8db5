"""
Password check against the relay provider's login form.

The provider has no endpoint that answers "is this the password for this
email". The only signal is how its web login flow behaves, so this module
submits the form and reads the redirects, cookies and landing page. Any
answer other than a clear success is reported as an invalid password.

Callers must use a dedicated httpx.AsyncClient: the probe relies on the
client's cookie jar to carry the session between requests.
"""
import logging
from urllib.parse import urljoin

import httpx

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAMES = ("PHPSESSID", "session", "laravel_session")
LOGIN_PATH_MARKERS = ("/auth/login", "/auth/signin")
LOGOUT_MARKERS = ("/auth/logout", "logout", "Sign Out", "sign out")
PROTECTED_PATH = "/dashboard"


def _is_redirect(response: httpx.Response) -> bool:
    return response.status_code in (301, 302, 303, 307, 308) and bool(response.headers.get("location"))


def _points_to_login(location: str) -> bool:
    return any(marker in location for marker in LOGIN_PATH_MARKERS)


def _has_login_form(html: str) -> bool:
    return 'name="password"' in html and 'name="email"' in html


def _session_cookie(response: httpx.Response) -> str | None:
    for name in SESSION_COOKIE_NAMES:
        if response.cookies.get(name):
            return name
    return next(iter(response.cookies.keys()), None)


async def _landing_is_authenticated(http: httpx.AsyncClient, url: str) -> bool | None:
    """True/False when the page decides it, None when it is ambiguous."""
    response = await http.get(url, follow_redirects=False)

    if _is_redirect(response):
        location = response.headers["location"]
        if _points_to_login(location):
            logger.info("Login probe: landing page bounced back to login")
            return False
        return True

    if response.status_code != 200:
        return False

    html = response.text
    if _has_login_form(html):
        return False
    if any(marker in html for marker in LOGOUT_MARKERS):
        return True
    return None


async def probe_login(http: httpx.AsyncClient, web_base_url: str, email: str, password: str) -> bool:
    """Return True only if the provider clearly accepted the credentials."""
    base = web_base_url.rstrip("/") + "/"
    try:
        login = await http.post(
            urljoin(base, "auth/login"),
            data={"email": email, "password": password},
            follow_redirects=False,
        )

        if not _is_redirect(login):
            # The provider re-renders the form on failure
            logger.info(f"Login probe: no redirect after login (status {login.status_code})")
            return False

        location = login.headers["location"]
        if _points_to_login(location):
            logger.info("Login probe: redirected back to login page")
            return False

        cookie = _session_cookie(login)
        if not cookie:
            logger.info("Login probe: no session cookie issued")
            return False

        if location.startswith("//"):
            location = "https:" + location
        verdict = await _landing_is_authenticated(http, urljoin(base, location))
        if verdict is not None:
            return verdict

        verdict = await _landing_is_authenticated(http, urljoin(base, PROTECTED_PATH.lstrip("/")))
        return bool(verdict)
    except httpx.HTTPError as e:
        logger.warning(f"Login probe failed for {email}: {e}")
        return False
