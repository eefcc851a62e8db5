import httpx
import pytest

from shop_relay.services.login_probe import probe_login

BASE = "https://relay.test"
LOGIN_FORM = '<form><input name="email"><input name="password"></form>'


def login_redirect(location="/dashboard", cookie=True):
    headers = [("location", location)]
    if cookie:
        headers.append(("set-cookie", "PHPSESSID=abc123; Path=/"))
    return httpx.Response(302, headers=headers)


async def probe(handler, password="Secret#1234"):
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        return await probe_login(http, BASE, "merchant@shop.com", password)


@pytest.mark.asyncio
async def test_accepted_credentials():
    def handler(request):
        if request.url.path == "/auth/login":
            assert b"merchant%40shop.com" in request.content
            return login_redirect()
        return httpx.Response(200, text='<a href="/auth/logout">Logout</a>')

    assert await probe(handler) is True


@pytest.mark.asyncio
async def test_form_rerendered_means_invalid():
    def handler(request):
        return httpx.Response(200, text=LOGIN_FORM)

    assert await probe(handler) is False


@pytest.mark.asyncio
async def test_redirect_back_to_login_means_invalid():
    def handler(request):
        return login_redirect("/auth/login?error=1")

    assert await probe(handler) is False


@pytest.mark.asyncio
async def test_missing_session_cookie_means_invalid():
    def handler(request):
        return login_redirect(cookie=False)

    assert await probe(handler) is False


@pytest.mark.asyncio
async def test_landing_page_bouncing_to_login_means_invalid():
    def handler(request):
        if request.url.path == "/auth/login":
            return login_redirect("/home")
        return httpx.Response(302, headers={"location": "/auth/login"})

    assert await probe(handler) is False


@pytest.mark.asyncio
async def test_ambiguous_landing_probes_protected_page():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        if request.url.path == "/auth/login":
            return login_redirect("/welcome")
        if request.url.path == "/welcome":
            return httpx.Response(200, text="<p>Welcome</p>")
        return httpx.Response(200, text=LOGIN_FORM)

    assert await probe(handler) is False
    assert seen == ["/auth/login", "/welcome", "/dashboard"]


@pytest.mark.asyncio
async def test_network_failure_fails_closed():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    assert await probe(handler) is False
