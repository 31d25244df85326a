from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from services.research_queue import RESEARCH_QUEUE_NAME, enqueue_research_processing
from services.session_token import create_session_token, decode_session_token


HARDENING_USER_ID = "hardening-user"
HARDENING_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(HARDENING_USER_ID)['token']}"}
BILLING_ADMIN_KEY = "operator-topup-key-for-tests"
ADMIN_HEADER = {"Authorization": f"Bearer {BILLING_ADMIN_KEY}"}


@pytest_asyncio.fixture
async def hardening_client(tmp_path):
    db_path = tmp_path / "platform_hardening.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


def test_session_token_round_trip_and_rejections():
    issued = create_session_token("user-1", "user@example.com")
    payload = decode_session_token(issued["token"])
    assert payload["sub"] == "user-1"
    assert payload["email"] == "user@example.com"
    assert payload["iss"] == "genscript-api"

    foreign = jwt.encode(
        {"sub": "user-1", "type": "other_session", "iss": "genscript-api"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError, match="type"):
        decode_session_token(foreign)

    with pytest.raises(ValueError):
        decode_session_token("not-a-token")


def test_enqueue_uses_research_queue_with_retry():
    queue = MagicMock()
    with patch("services.research_queue.get_research_queue", return_value=queue):
        enqueue_research_processing("job-123")

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.research_jobs.process_next_research_job_sync",)
    assert kwargs["job_id"] == "research:job-123"
    assert kwargs["retry"].max == 2
    assert RESEARCH_QUEUE_NAME == "research_jobs"


@pytest.mark.asyncio
async def test_requests_without_session_are_rejected(hardening_client):
    assert (await hardening_client.get("/workflows")).status_code == 401
    bad = await hardening_client.get("/workflows", headers={"Authorization": "Bearer garbage"})
    assert bad.status_code == 401
    assert bad.json()["detail"] == "Invalid or expired session token."

    cross_user = await hardening_client.get("/billing/credits?user_id=someone-else", headers=HARDENING_AUTH_HEADER)
    assert cross_user.status_code == 403


@pytest.mark.asyncio
async def test_rate_limit_returns_retry_after_and_ignores_spoofed_forwarding(hardening_client):
    app.state.disable_rate_limits = False
    with patch.object(settings, "BILLING_ADMIN_KEY", BILLING_ADMIN_KEY), patch(
        "routers.rate_limit.redis.from_url", side_effect=ConnectionError("redis offline")
    ):
        statuses = []
        for index in range(31):
            response = await hardening_client.post(
                "/billing/topup",
                json={"credits": 1, "user_id": HARDENING_USER_ID},
                headers={**ADMIN_HEADER, "X-Forwarded-For": f"203.0.113.{index}"},
            )
            statuses.append(response.status_code)

    assert statuses[:30] == [200] * 30
    assert statuses[30] == 429
    assert int(response.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_health_endpoints_report_research_provider(hardening_client):
    live = await hardening_client.get("/health/live")
    assert live.json() == {"alive": True}

    with patch("routers.health.get_anthropic_client", return_value=None):
        ready = await hardening_client.get("/health/ready")
    assert ready.status_code == 503
    assert ready.json() == {"ready": False, "missing": ["ANTHROPIC_API_KEY"]}

    with patch("routers.health.get_anthropic_client", return_value=object()):
        ready = await hardening_client.get("/health/ready")
    assert ready.json() == {"ready": True}


@pytest.mark.asyncio
async def test_workflow_listing_is_scoped_to_session_user(hardening_client):
    created = await hardening_client.post(
        "/workflows",
        json={"topic": "How ransomware gangs negotiate"},
        headers=HARDENING_AUTH_HEADER,
    )
    assert created.status_code == 200
    assert created.json()["title"] == "How ransomware gangs negotiate"

    empty = await hardening_client.post("/workflows", json={}, headers=HARDENING_AUTH_HEADER)
    assert empty.status_code == 400

    listing = await hardening_client.get("/workflows", headers=HARDENING_AUTH_HEADER)
    assert listing.json()["count"] == 1

    other_header = {"Authorization": f"Bearer {create_session_token('someone-else')['token']}"}
    assert (await hardening_client.get("/workflows", headers=other_header)).json()["count"] == 0
    detail = await hardening_client.get(f"/workflows/{created.json()['id']}", headers=other_header)
    assert detail.status_code == 403


@pytest.mark.asyncio
async def test_topup_requires_operator_key_and_is_applied_once(hardening_client):
    body = {"credits": 10, "billing_reference": "invoice-77", "user_id": HARDENING_USER_ID}

    disabled = await hardening_client.post("/billing/topup", json=body, headers=ADMIN_HEADER)
    assert disabled.status_code == 503

    with patch.object(settings, "BILLING_ADMIN_KEY", BILLING_ADMIN_KEY):
        self_service = await hardening_client.post("/billing/topup", json=body, headers=HARDENING_AUTH_HEADER)
        first = await hardening_client.post("/billing/topup", json=body, headers=ADMIN_HEADER)
        replay = await hardening_client.post("/billing/topup", json=body, headers=ADMIN_HEADER)

    assert self_service.status_code == 401
    assert first.json()["duplicate"] is False
    assert first.json()["balance_after"] == settings.FREE_MONTHLY_CREDITS + 10
    assert replay.json() == {
        "ok": True,
        "credits_added": 0,
        "duplicate": True,
        "balance_after": settings.FREE_MONTHLY_CREDITS + 10,
    }

    summary = await hardening_client.get("/billing/credits", headers=HARDENING_AUTH_HEADER)
    assert summary.json()["balance"] == settings.FREE_MONTHLY_CREDITS + 10
