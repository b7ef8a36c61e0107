import pytest
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from xunlei_launcher.app import create_app
from xunlei_launcher.auth import SessionStore, hash_auth_message
from xunlei_launcher.config import SESSION_COOKIE


class FakeGateway:
    """Records proxied requests instead of running a CGI program."""

    def __init__(self, error=None):
        self.paths = []
        self.error = error

    async def proxy(self, request):
        self.paths.append(request.url.path)
        if self.error is not None:
            raise self.error
        return PlainTextResponse(f"proxied {request.url.path}")


GOOD_LOGIN = {
    "auth_user": hash_auth_message("admin"),
    "auth_password": hash_auth_message("secret"),
}


@pytest.fixture
def auth_settings(settings):
    settings.auth_user = "admin"
    settings.auth_password = "secret"
    return settings


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(auth_settings, store, gateway):
    with TestClient(create_app(auth_settings, store=store, gateway=gateway)) as c:
        yield c


def login(client):
    return client.post("/login", data=GOOD_LOGIN, follow_redirects=False)


# ------------------------------------------------------------------
# Not logged in
# ------------------------------------------------------------------

def test_anonymous_request_redirects_to_login(client, gateway):
    resp = client.get("/webman/index.cgi", follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"
    assert gateway.paths == []


def test_login_page_is_served(client):
    resp = client.get("/login")
    assert resp.status_code == 200
    assert 'name="auth_user"' in resp.text
    assert 'name="auth_password"' in resp.text
    assert "Wrong login/password" not in resp.text


def test_sha3_script_is_served(client):
    resp = client.get("/js/sha3.min.js")
    assert resp.status_code == 200
    assert "sha3_512" in resp.text
    assert "javascript" in resp.headers["content-type"]


def test_login_probe_requires_session(client):
    resp = client.get("/webman/login.cgi", follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"


# ------------------------------------------------------------------
# Login
# ------------------------------------------------------------------

def test_correct_login_sets_session_and_redirects(client, store):
    resp = login(client)

    assert resp.status_code == 303
    assert resp.headers["location"] == "/"
    assert SESSION_COOKIE in resp.cookies
    assert len(store) == 1
    assert store.get(resp.cookies[SESSION_COOKIE]) is not None


def test_wrong_login_renders_error_without_session(client, store):
    resp = client.post(
        "/login",
        data={"auth_user": GOOD_LOGIN["auth_user"], "auth_password": hash_auth_message("nope")},
        follow_redirects=False,
    )

    assert resp.status_code == 200
    assert "Wrong login/password" in resp.text
    assert len(store) == 0
    assert SESSION_COOKIE not in resp.cookies


def test_plaintext_credentials_are_rejected(client, store):
    resp = client.post("/login", data={"auth_user": "admin", "auth_password": "secret"})
    assert "Wrong login/password" in resp.text
    assert len(store) == 0


def test_missing_form_field_is_bad_request(client):
    resp = client.post("/login", data={"auth_user": GOOD_LOGIN["auth_user"]})
    assert resp.status_code == 400


# ------------------------------------------------------------------
# Logged in
# ------------------------------------------------------------------

def test_logged_in_requests_go_to_gateway(client, gateway):
    login(client)

    resp = client.get("/webman/3rdparty/pan-xunlei-com/index.cgi/")

    assert resp.status_code == 200
    assert gateway.paths == ["/webman/3rdparty/pan-xunlei-com/index.cgi/"]


def test_logged_in_login_page_goes_to_gateway(client, gateway):
    login(client)
    client.get("/login", follow_redirects=False)
    client.get("/js/sha3.min.js", follow_redirects=False)
    assert gateway.paths == ["/login", "/js/sha3.min.js"]


def test_login_probe_returns_token_payload(client, gateway):
    login(client)

    resp = client.get("/webman/login.cgi")

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/json; charset=utf-8"
    assert resp.json() == {"SynoToken": ""}
    assert gateway.paths == []


def test_stale_cookie_is_evicted(client, store):
    client.cookies.set(SESSION_COOKIE, "not-a-session")

    resp = client.get("/webman/index.cgi", follow_redirects=False)

    assert resp.status_code == 303
    assert store.get("not-a-session") is None


def test_login_issues_fresh_session_id(client, store):
    client.cookies.set(SESSION_COOKIE, "planted-sid")

    resp = login(client)

    assert resp.status_code == 303
    new_sid = resp.cookies[SESSION_COOKIE]
    assert new_sid != "planted-sid"
    assert store.get("planted-sid") is None
    assert store.get(new_sid) is not None


def test_second_login_replaces_previous_session(client, store):
    first = login(client).cookies[SESSION_COOKIE]

    second = login(client).cookies[SESSION_COOKIE]

    assert first != second
    assert store.get(first) is None
    assert store.get(second) is not None
    assert len(store) == 1


def test_gateway_error_becomes_text_response(auth_settings, store):
    gateway = FakeGateway(error=RuntimeError("pipe exploded"))
    with TestClient(create_app(auth_settings, store=store, gateway=gateway)) as c:
        login(c)
        resp = c.get("/webman/index.cgi")

        assert resp.status_code == 500
        assert "An error occurred" in resp.text
        assert "pipe exploded" in resp.text

        # still serving
        assert c.get("/webman/login.cgi").status_code == 200


# ------------------------------------------------------------------
# Authentication disabled
# ------------------------------------------------------------------

def test_disabled_auth_materializes_session(settings, store, gateway):
    with TestClient(create_app(settings, store=store, gateway=gateway)) as c:
        resp = c.get("/webman/index.cgi")

        assert resp.status_code == 200
        assert gateway.paths == ["/webman/index.cgi"]
        assert SESSION_COOKIE in resp.cookies
        assert len(store) == 1


def test_disabled_auth_accepts_any_login(settings, store, gateway):
    with TestClient(create_app(settings, store=store, gateway=gateway)) as c:
        resp = c.post("/login", data={"auth_user": "x", "auth_password": "y"}, follow_redirects=False)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/"
