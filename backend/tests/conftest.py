from __future__ import annotations

import asyncio
import os
import tempfile

_tmp = tempfile.mkdtemp(prefix="tweetboard-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_tmp, 'tweetboard.db')}"
os.environ["UPLOAD_DIR"] = os.path.join(_tmp, "uploads")
os.environ["OTEL_ENABLED"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import text  # noqa: E402

from app.db import engine, reset_db  # noqa: E402
from app.main import app  # noqa: E402


@pytest.fixture
def client():
    asyncio.run(reset_db())
    with TestClient(app) as c:
        yield c


def run_sql(statement: str, **params) -> list:
    async def _run():
        async with engine.begin() as conn:
            result = await conn.execute(text(statement), params)
            return [tuple(row) for row in result.all()] if result.returns_rows else []

    return asyncio.run(_run())


def register(client: TestClient, nickname: str, password: str = "secret", **extra) -> dict:
    resp = client.post("/api/register", json={"nickname": nickname, "password": password, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


def post_tweet(client: TestClient, uid: str, content: str = "hello", tags: str | None = None, files=None) -> dict:
    data = {"uid": uid, "content": content}
    if tags is not None:
        data["tags"] = tags
    resp = client.post("/api/tweets", data=data, files=files)
    assert resp.status_code == 201, resp.text
    return resp.json()
