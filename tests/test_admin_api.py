import asyncio
import io
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from core.auth import AdminUser, require_admin
from core.repository import TableRepository
from services.admin_api.app.main import app as admin_app


@pytest.fixture
def client(db):
    # Lifespan connects to the fake backend instead of Supabase
    with patch("services.admin_api.app.main.DataAccessClient.connect", AsyncMock(return_value=db)):
        with TestClient(admin_app) as test_client:
            yield test_client


@pytest.fixture
def admin_client(client):
    admin_app.dependency_overrides[require_admin] = lambda: AdminUser(id="u1", email="owner@example.com",
                                                                       access_token="token")
    yield client
    admin_app.dependency_overrides.pop(require_admin, None)


def png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (255, 255, 255)).save(buf, "PNG")
    return buf.getvalue()


# --- Meta and auth ---

def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert "Admin API is running (Data client: initialized)" in response.json()["message"]


def test_admin_routes_require_session(client):
    response = client.get("/admin/clients")
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_bearer_token_is_verified_with_auth_service(client, fake_backend):
    fake_backend.auth.get_user.return_value = SimpleNamespace(user=SimpleNamespace(id="u1", email="owner@example.com"))

    response = client.get("/admin/clients", headers={"Authorization": "Bearer good-token"})

    assert response.status_code == 200
    fake_backend.auth.get_user.assert_called_with("good-token")


def test_rejected_token_answers_401(client, fake_backend):
    fake_backend.auth.get_user.return_value = SimpleNamespace(user=None)
    response = client.get("/admin/clients", headers={"Authorization": "Bearer expired"})
    assert response.status_code == 401


def test_session_cookie_is_accepted(client, fake_backend, test_settings):
    fake_backend.auth.get_user.return_value = SimpleNamespace(user=SimpleNamespace(id="u1", email=None))
    client.cookies.set(test_settings.SESSION_COOKIE_NAME, "cookie-token")

    response = client.get("/admin/clients")

    assert response.status_code == 200
    fake_backend.auth.get_user.assert_called_with("cookie-token")


# --- Reading ---

def test_list_resources(admin_client):
    response = admin_client.get("/admin/resources")
    assert response.status_code == 200
    pages = {page["name"]: page for page in response.json()["data"]}
    assert set(pages) == {"settings", "about", "categories", "clients", "client_images", "navbar_links"}
    assert pages["settings"]["singleton"] is True
    assert [field["name"] for field in pages["navbar_links"]["fields"]] == ["label", "href", "position"]


def test_list_rows(admin_client):
    response = admin_client.get("/admin/clients")
    assert response.status_code == 200
    assert [row["name"] for row in response.json()["data"]] == ["Harbour Gala", "Spring Market"]


def test_unknown_resource_is_404(admin_client):
    assert admin_client.get("/admin/invoices").status_code == 404


def test_form_for_existing_row_is_prefilled(admin_client):
    response = admin_client.get("/admin/client_images/form", params={"id": "img-1"})
    assert response.status_code == 200
    fields = {field["name"]: field for field in response.json()["data"]}
    assert fields["client_id"]["value"] == "client-1"
    assert fields["client_id"]["options"] == ["client-1", "client-2"]
    assert fields["image_url"]["preview"] == {"kind": "url", "src": "https://cdn.example.com/a.jpg"}


def test_form_for_missing_row_is_404(admin_client):
    assert admin_client.get("/admin/clients/form", params={"id": "nope"}).status_code == 404


# --- Writing ---

def test_create_row(admin_client, fake_backend):
    response = admin_client.post("/admin/navbar_links", json={"label": "Work", "href": "/portfolio", "position": "3"})

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["label"] == "Work" and data["position"] == 3
    assert fake_backend.tables["navbar_links"][-1]["href"] == "/portfolio"


def test_create_invalid_row_returns_field_errors_and_values(admin_client, fake_backend):
    payload = {"label": "", "href": "portfolio"}
    response = admin_client.post("/admin/navbar_links", json=payload)

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert set(detail["field_errors"]) == {"label", "href"}
    assert detail["values"] == payload
    assert fake_backend.count("navbar_links", "insert") == 0


def test_create_with_unknown_client_is_rejected(admin_client):
    response = admin_client.post("/admin/client_images",
                                 json={"client_id": "client-9", "image_url": "https://cdn.example.com/x.jpg"})
    assert response.status_code == 422
    assert "client_id" in response.json()["detail"]["field_errors"]


def test_singleton_post_updates_existing_row(admin_client, fake_backend):
    response = admin_client.post("/admin/settings", json={"site_title": "Studio South"})

    assert response.status_code == 200
    assert len(fake_backend.tables["site_settings"]) == 1
    assert fake_backend.tables["site_settings"][0]["site_title"] == "Studio South"


def test_update_row(admin_client, fake_backend):
    response = admin_client.patch("/admin/clients/client-2", json={"name": "Spring Market 2026"})
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Spring Market 2026"


def test_update_missing_row_is_404(admin_client):
    response = admin_client.patch("/admin/clients/nope", json={"name": "Ghost"})
    assert response.status_code == 404


def test_delete_row(admin_client, fake_backend):
    response = admin_client.delete("/admin/clients/client-2")
    assert response.status_code == 204
    assert [row["id"] for row in fake_backend.tables["clients"]] == ["client-1"]


def test_delete_referenced_row_is_409(admin_client):
    response = admin_client.delete("/admin/clients/client-1")
    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "ReferentialError"


def test_singletons_cannot_be_deleted(admin_client, fake_backend):
    response = admin_client.delete("/admin/settings/settings-1")
    assert response.status_code == 405
    assert fake_backend.count("site_settings", "delete") == 0


# --- Uploads ---

def test_upload_image(admin_client, fake_backend):
    response = admin_client.post("/admin/uploads", files={"file": ("cover.png", png_bytes(), "image/png")},
                                 data={"folder": "clients"})

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["key"].startswith("clients/")
    assert data["url"].endswith(data["key"])
    assert data["key"] in fake_backend.objects


def test_upload_rejects_non_images(admin_client, fake_backend):
    response = admin_client.post("/admin/uploads", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 415
    assert fake_backend.objects == {}


def test_upload_defaults_to_uploads_folder(admin_client):
    response = admin_client.post("/admin/uploads", files={"file": ("cover.png", png_bytes(), "image/png")})
    assert response.status_code == 201
    assert response.json()["data"]["key"].startswith("uploads/")


@pytest.mark.parametrize("folder", ["../secrets", "clients/../../x", "invoices"])
def test_upload_rejects_undeclared_folders(admin_client, fake_backend, folder):
    response = admin_client.post("/admin/uploads", files={"file": ("cover.png", png_bytes(), "image/png")},
                                 data={"folder": folder})

    assert response.status_code == 422
    assert "folder" in response.json()["detail"]["field_errors"]
    assert fake_backend.objects == {}


# --- Concurrency ---

@pytest.mark.asyncio
async def test_concurrent_patches_to_same_row_are_serialized(db, fake_backend, monkeypatch):
    monkeypatch.setattr(admin_app.state, "db", db, raising=False)
    monkeypatch.setattr(admin_app.state, "ledgers", {}, raising=False)
    monkeypatch.setitem(admin_app.dependency_overrides, require_admin,
                        lambda: AdminUser(id="u1", email="owner@example.com", access_token="token"))
    active, overlap = [0], [0]
    original = TableRepository.update

    async def slow_update(self, entity_id, patch):
        active[0] += 1
        overlap[0] = max(overlap[0], active[0])
        try:
            await asyncio.sleep(0.05)
            return await original(self, entity_id, patch)
        finally:
            active[0] -= 1

    monkeypatch.setattr(TableRepository, "update", slow_update)

    transport = httpx.ASGITransport(app=admin_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://admin.test") as api:
        first, second = await asyncio.gather(
            api.patch("/admin/clients/client-2", json={"name": "First"}),
            api.patch("/admin/clients/client-2", json={"name": "Second"}),
        )

    assert first.status_code == second.status_code == 200
    assert overlap[0] == 1
    assert fake_backend.tables["clients"][1]["name"] in {"First", "Second"}
    assert len(admin_app.state.ledgers["clients"]) == 0
