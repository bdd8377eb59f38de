from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from werkzeug.security import generate_password_hash

from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.session_token import create_session_token


ALICE_ID = "user-alice"
BOB_ID = "user-bob"
CAROL_ID = "user-carol"


def auth_header(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def fake_storage():
    """Replace the S3 calls with in-memory fakes; yields the mocks."""
    uploaded = {}

    async def _upload(key, content, content_type):
        uploaded[key] = content
        return f"https://storage.test/{key}"

    async def _download_url(key, stored_path, original_name=None):
        return f"{stored_path}?signed=1"

    with patch("services.storage.upload_object", new=AsyncMock(side_effect=_upload)) as upload_mock, \
         patch("services.storage.delete_object", new=AsyncMock(return_value=None)) as delete_mock, \
         patch("services.storage.download_url", new=AsyncMock(side_effect=_download_url)) as url_mock:
        yield {
            "objects": uploaded,
            "upload": upload_mock,
            "delete": delete_mock,
            "download_url": url_mock,
        }


@pytest_asyncio.fixture
async def vault_client(tmp_path, fake_storage):
    db_path = tmp_path / "vault.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        session.add_all(
            [
                User(id=ALICE_ID, name="Alice Owner", email="alice@example.com", password=generate_password_hash("alice-pass")),
                User(id=BOB_ID, name="Bob Viewer", email="bob@example.com", password=generate_password_hash("bob-pass")),
                User(id=CAROL_ID, name="Carol Outsider", email="carol@example.com", password=generate_password_hash("carol-pass")),
            ]
        )
        await session.commit()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with patch("services.audit_log.async_session_maker", session_maker):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


async def upload_file(client, user_id=ALICE_ID, name="report.pdf", content=b"%PDF-1.4 fake", mime="application/pdf"):
    response = await client.post(
        "/files/upload",
        files=[("files", (name, content, mime))],
        headers=auth_header(user_id),
    )
    assert response.status_code == 201, response.text
    return response.json()["files"][0]
