# tests/test_health_views.py
import pytest
from httpx import ASGITransport, AsyncClient

from rehabplus import security
from rehabplus.main import app


def test_health(client):
    data = client.get("/api/health").json()
    assert data["status"] == "ok"
    assert data["database"] == "connected"


def test_login_page_renders(client):
    response = client.get("/login")
    assert response.status_code == 200
    assert "RehabPlus" in response.text


def test_pages_redirect_when_signed_out(client):
    response = client.get("/dashboard", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/login"


def test_signed_in_user_skips_login(client, admin_user):
    client.cookies.set(security.AUTH_COOKIE_NAME, security.create_user_token(admin_user))
    response = client.get("/login", follow_redirects=False)
    assert response.headers["location"] == "/dashboard"
    assert client.get("/dashboard").status_code == 200


def test_settings_page_is_admin_only(client, pt_user):
    client.cookies.set(security.AUTH_COOKIE_NAME, security.create_user_token(pt_user))
    response = client.get("/admin/settings", follow_redirects=False)
    assert response.headers["location"] == "/dashboard"


@pytest.mark.asyncio
async def test_health_through_the_socket_wrapper():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/api/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"
