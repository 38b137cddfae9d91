import pytest

from settings import settings
from storage.db import Database


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "fetch_retry_delay_s", 0.0)
    monkeypatch.setattr(settings, "db_retry_delay_s", 0.0)
    monkeypatch.setattr(settings, "stream_chunk_delay_s", 0.0)
    monkeypatch.setattr(settings, "github_token", None)
    monkeypatch.setattr(settings, "llm_api_key", None)


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.init_schema()
    yield database
    await database.aclose()
