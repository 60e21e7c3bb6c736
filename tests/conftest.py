import asyncio
from unittest.mock import AsyncMock

import pytest

from core.config import Settings
from core.data_client import DataAccessClient
from tests.fakes import FakeSupabase


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        SUPABASE_URL="https://project.supabase.co",
        SUPABASE_KEY="anon-key",
        SUPABASE_SERVICE_KEY="service-key",
        DB_RETRY_ATTEMPTS=3,
        DB_RETRY_BASE_DELAY=0.25,
        DB_RETRY_MAX_DELAY=2.0,
        SMTP_HOST="smtp.example.com",
        SMTP_PORT=587,
        SMTP_USERNAME="mailer",
        SMTP_PASSWORD="secret",
        CONTACT_FROM_EMAIL="noreply@example.com",
        CONTACT_RECIPIENT="owner@example.com",
    )


@pytest.fixture
def seed_rows():
    return {
        "site_settings": [{"id": "settings-1", "site_title": "Studio North", "hero_image": None,
                           "contact_email": "hello@example.com"}],
        "about": [{"id": "about-1", "heading": "About", "body": "Portrait and event photographer."}],
        "portfolio_categories": [
            {"id": "cat-1", "slug": "events", "title": "Events", "position": 1},
            {"id": "cat-2", "slug": "people", "title": "People", "position": 2},
        ],
        "clients": [
            {"id": "client-1", "category": "events", "name": "Harbour Gala", "position": 1},
            {"id": "client-2", "category": "events", "name": "Spring Market", "position": 2},
        ],
        "client_images": [
            {"id": "img-2", "client_id": "client-1", "image_url": "https://cdn.example.com/b.jpg", "position": 2},
            {"id": "img-1", "client_id": "client-1", "image_url": "https://cdn.example.com/a.jpg", "position": 1},
        ],
        "navbar_links": [
            {"id": "nav-1", "label": "Home", "href": "/", "position": 1},
            {"id": "nav-2", "label": "Contact", "href": "#contact", "position": 2},
        ],
    }


@pytest.fixture
def fake_backend(seed_rows):
    return FakeSupabase(seed_rows)


@pytest.fixture
def no_backoff(monkeypatch):
    """Retry sleeps only yield to the loop; the requested delays are recorded."""
    real_sleep = asyncio.sleep

    async def yield_once(delay, *args, **kwargs):
        await real_sleep(0)

    sleep = AsyncMock(side_effect=yield_once)
    monkeypatch.setattr("core.data_client.asyncio.sleep", sleep)
    return sleep


@pytest.fixture
def db(fake_backend, test_settings, no_backoff):
    return DataAccessClient(fake_backend, test_settings, timeout=0.2)
