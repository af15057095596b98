# tests/test_api.py
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from miragecodex.database import get_db
from miragecodex.image_client import get_image_client
from miragecodex.llm_client import get_llm_client
from miragecodex.main import app
from miragecodex.models import UserBilling
from miragecodex.storage import get_object_store
from miragecodex.users import optional_active_user


@pytest_asyncio.fixture
async def client(session_maker, fake_llm, fake_images, store):
    async def _db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_llm_client] = lambda: fake_llm
    app.dependency_overrides[get_image_client] = lambda: fake_images
    app.dependency_overrides[get_object_store] = lambda: store
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def login_as(user_id: int, superuser: bool = False):
    app.dependency_overrides[optional_active_user] = lambda: SimpleNamespace(id=user_id, is_superuser=superuser)


def page_url(catalog, n: int, suffix: str = "") -> str:
    return f"/api/book/{catalog.book_id}/page/{n}{suffix}"


@pytest.mark.asyncio
async def test_page_status_miss_then_hit(client, catalog):
    r = await client.get(page_url(catalog, 1), params={"editionId": catalog.edition_id})
    assert r.status_code == 200
    assert r.json() == {"exists": False, "content": None}

    login_as(catalog.user_id)
    r = await client.post(page_url(catalog, 1, "/save"), json={"editionId": catalog.edition_id, "content": "Dawn."})
    assert r.status_code == 200
    assert r.json() == {"success": True, "alreadySaved": False, "creditsCharged": 3, "debitPending": False}

    r = await client.get(page_url(catalog, 1), params={"editionId": catalog.edition_id})
    assert r.json() == {"exists": True, "content": "Dawn."}


@pytest.mark.asyncio
async def test_page_status_rejects_edition_of_other_book(client, catalog):
    r = await client.get(f"/api/book/{catalog.book_id + 1}/page/1", params={"editionId": catalog.edition_id})
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_generate_requires_login(client, catalog):
    r = await client.post(page_url(catalog, 1), json={"editionId": catalog.edition_id, "messages": []})
    assert r.status_code == 401
    assert r.json()["error"] == "unauthenticated"


@pytest.mark.asyncio
async def test_generate_streams_tokens(client, fake_llm, catalog):
    login_as(catalog.user_id)
    r = await client.post(
        page_url(catalog, 2),
        json={"editionId": catalog.edition_id, "messages": [{"role": "user", "content": "Go on."}]},
    )
    assert r.status_code == 200
    assert r.text == "Once upon a time."
    call = fake_llm.calls[0]
    assert call["model_name"] == "gpt-4o-mini"
    assert call["max_tokens"] == 2000
    assert call["messages"][0]["role"] == "system"
    assert call["messages"][-1] == {"role": "user", "content": "Go on."}


@pytest.mark.asyncio
async def test_generate_without_credits_is_402(client, session_maker, fake_llm, catalog):
    async with session_maker() as s:
        (await s.get(UserBilling, catalog.user_id)).credits = 0
        await s.commit()

    login_as(catalog.user_id)
    r = await client.post(page_url(catalog, 1), json={"editionId": catalog.edition_id})
    assert r.status_code == 402
    body = r.json()
    assert body["error"] == "insufficient_credits"
    assert (body["credits_needed"], body["credits_available"]) == (3, 0)
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_generate_unknown_page_is_400(client, catalog):
    login_as(catalog.user_id)
    r = await client.post(page_url(catalog, 42), json={"editionId": catalog.edition_id})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_page_image_redirects_to_stored_file(client, fake_images, catalog):
    params = {"edition": catalog.edition_id, "prompt": "lanterns over the harbour"}
    r = await client.get(page_url(catalog, 3, "/image"), params=params)
    assert r.status_code == 401

    login_as(catalog.user_id)
    r = await client.get(page_url(catalog, 3, "/image"), params=params)
    assert r.status_code == 307
    assert r.headers["location"].startswith("/static/uploads/page-images/")

    app.dependency_overrides.pop(optional_active_user)
    r = await client.get(page_url(catalog, 3, "/image"), params=params)
    assert r.status_code == 307
    assert len(fake_images.calls) == 1


@pytest.mark.asyncio
async def test_cover_generate_and_regenerate(client, fake_images, catalog):
    login_as(catalog.user_id)
    r = await client.get(f"/api/book/{catalog.book_id}/cover")
    assert r.status_code == 307
    assert r.headers["location"] == f"/static/uploads/book-covers/{catalog.book_id}.jpg"

    r = await client.post(f"/api/book/{catalog.book_id}/cover")
    assert r.json() == {"success": True, "coverUrl": f"/static/uploads/book-covers/{catalog.book_id}.jpg"}
    assert len(fake_images.calls) == 2


@pytest.mark.asyncio
async def test_editions_endpoints(client, catalog):
    login_as(catalog.user_id)
    r = await client.post(
        f"/api/book/{catalog.book_id}/editions", json={"languageId": catalog.french_id, "modelId": catalog.gpt_id}
    )
    assert r.status_code == 201
    assert r.json()["edition"]["language_id"] == catalog.french_id

    r = await client.post(
        f"/api/book/{catalog.book_id}/editions", json={"languageId": catalog.french_id, "modelId": catalog.gpt_id}
    )
    assert r.status_code == 409
    assert "existing_edition_id" in r.json()

    r = await client.get(f"/api/book/{catalog.book_id}/editions")
    assert len(r.json()) == 2


@pytest.mark.asyncio
async def test_likes(client, catalog):
    login_as(catalog.user_id)
    r = await client.post(f"/api/book/{catalog.book_id}/like")
    assert r.json() == {"liked": True, "likesCount": 1}

    r = await client.post(page_url(catalog, 1, "/like"), json={"editionId": catalog.edition_id})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_credit_check_and_api_keys(client, catalog):
    login_as(catalog.user_id)
    r = await client.get("/api/user/credits/check", params={"editionId": catalog.edition_id})
    assert r.json() == {"allowed": True, "credits_needed": 3, "credits_available": 50, "byo_key": False}

    r = await client.put("/api/user/api-keys/openai", json={"apiKey": "sk-own"})
    assert r.status_code == 204
    r = await client.get("/api/user/credits/check", params={"editionId": catalog.edition_id})
    assert r.json()["byo_key"] is True and r.json()["credits_needed"] == 0

    r = await client.delete("/api/user/api-keys/openai")
    assert r.json() == {"removed": True}
    r = await client.put("/api/user/api-keys/nowhere", json={"apiKey": "k"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_admin_config_requires_superuser(client, catalog):
    login_as(catalog.user_id)
    r = await client.get("/api/admin/config/feature_flags")
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"

    login_as(catalog.admin_id, superuser=True)
    r = await client.put("/api/admin/config/feature_flags", json={"book_page_images": True})
    assert r.json() == {"key": "feature_flags", "value": {"book_page_images": True}}
    r = await client.get("/api/admin/config/feature_flags")
    assert r.json()["value"] == {"book_page_images": True}
    r = await client.get("/api/admin/config/colours")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_register_login_and_billing(client, catalog):
    r = await client.post("/auth/register", json={"email": "newreader@example.com", "password": "correct horse"})
    assert r.status_code == 201

    r = await client.post(
        "/auth/bearer/login", data={"username": "newreader@example.com", "password": "correct horse"}
    )
    assert r.status_code == 200
    headers = {"Authorization": f"Bearer {r.json()['access_token']}"}

    r = await client.get("/api/user/billing", headers=headers)
    assert r.status_code == 200
    billing = r.json()
    assert billing["plan_slug"] == "free"
    assert billing["credits"] == 50

    r = await client.get("/api/user/transactions", headers=headers)
    page = r.json()
    assert page["total"] == 1
    assert page["transactions"][0]["transaction_type"] == "plan_grant"
    assert page["has_more"] is False


@pytest.mark.asyncio
async def test_book_views_anonymous_and_signed_in(client, catalog):
    url = f"/api/book/{catalog.book_id}/view"
    r = await client.post(url, json={"sessionId": "anon-1"})
    assert r.status_code == 200
    assert r.json() == {"success": True, "counted": True, "viewsCount": 1}

    r = await client.post(url, json={"sessionId": "anon-1"})
    assert r.json() == {"success": True, "counted": False, "viewsCount": 1}

    r = await client.post(url, headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})
    assert r.json()["counted"] is True

    login_as(catalog.user_id)
    r = await client.post(url)
    assert r.json() == {"success": True, "counted": True, "viewsCount": 3}

    r = await client.post(f"/api/book/{catalog.book_id + 1}/view")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_page_view_needs_edition_and_saved_page(client, catalog):
    r = await client.post(page_url(catalog, 1, "/view"), json={"sessionId": "anon-1"})
    assert r.status_code == 422

    r = await client.post(page_url(catalog, 1, "/view"), json={"editionId": catalog.edition_id})
    assert r.status_code == 404

    login_as(catalog.user_id)
    await client.post(page_url(catalog, 1, "/save"), json={"editionId": catalog.edition_id, "content": "Dawn."})
    app.dependency_overrides.pop(optional_active_user)

    r = await client.post(page_url(catalog, 1, "/view"), json={"editionId": catalog.edition_id, "sessionId": "anon-1"})
    assert r.json() == {"success": True, "counted": True, "viewsCount": 1}
    r = await client.post(page_url(catalog, 1, "/view"), json={"editionId": catalog.edition_id})
    assert r.json()["counted"] is False
