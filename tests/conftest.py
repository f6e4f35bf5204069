"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

# Settings are read once and cached, so the environment must be in place first.
os.environ["COINQUEST_REDIS_ENABLED"] = "false"
os.environ["COINQUEST_PENDING_BACKEND"] = "memory"
os.environ["COINQUEST_EMAIL_PROVIDER"] = "console"
os.environ["COINQUEST_LOG_FORMAT"] = "console"
os.environ["COINQUEST_JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256"
os.environ["COINQUEST_JWT_ALGORITHM"] = "HS256"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinquest.auth.jwt import reset_keys
from coinquest.auth.pending import PendingRegistrationCache, close_pending_cache, init_pending_cache
from coinquest.config import get_settings
from coinquest.database import close_db, get_session, init_db
from coinquest.db.models import Lesson, Quiz, User
from coinquest.main import create_app

get_settings.cache_clear()
reset_keys()

PASSWORD = "SecureP@ss1"


@asynccontextmanager
async def open_session() -> AsyncIterator[AsyncSession]:
    """Short-lived session; SQLite allows one writer, so never hold one across a request."""
    gen = get_session()
    session = await gen.__anext__()
    try:
        yield session
    finally:
        await gen.aclose()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[str, None]:
    """Fresh SQLite database per test."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'coinquest.db'}"
    await init_db(url, create_all=True)
    yield url
    await close_db()


@pytest_asyncio.fixture
async def pending_cache(database: str) -> AsyncGenerator[PendingRegistrationCache, None]:
    """In-memory pending-signup cache, without the background sweep."""
    cache = init_pending_cache(get_settings())
    yield cache
    await close_pending_cache()


@pytest_asyncio.fixture
async def client(database: str, pending_cache: PendingRegistrationCache) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against a fresh app (lifespan resources are set up by the fixtures)."""
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db_session(database: str) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for service-level tests."""
    async with open_session() as session:
        yield session


@pytest.fixture
def mock_email_service(monkeypatch):
    """Replace outbound email; every call succeeds and is recorded."""
    mock_service = MagicMock()
    mock_service.send_template = AsyncMock(return_value=True)
    mock_service.send_email = AsyncMock(return_value=True)

    monkeypatch.setattr("coinquest.auth.router.get_email_service", lambda *a, **kw: mock_service)
    return mock_service


def sent_codes(mock_service: MagicMock) -> list[str]:
    """Plaintext codes handed to the email service, oldest first."""
    return [
        call.kwargs["context"]["code"]
        for call in mock_service.send_template.call_args_list
        if call.kwargs.get("template_name") == "otp_code"
    ]


def last_code(mock_service: MagicMock) -> str:
    codes = sent_codes(mock_service)
    assert codes, "no verification code was sent"
    return codes[-1]


async def signup_and_verify(
    client: AsyncClient,
    mock_service: MagicMock,
    email: str = "learner@example.com",
    name: str = "Ada",
    password: str = PASSWORD,
) -> dict:
    """Run the full signup flow and return the token response body."""
    response = await client.post("/api/v1/auth/signup", json={
        "name": name,
        "email": email,
        "password": password,
        "age": 14,
        "grade": "8th",
        "school": "Lincoln Middle",
    })
    assert response.status_code == 200, response.text

    response = await client.post("/api/v1/auth/verify-otp", json={
        "email": email,
        "otp": last_code(mock_service),
        "flow": "signup",
    })
    assert response.status_code == 201, response.text
    return response.json()


async def backdate_login_challenge(email: str, seconds: int) -> None:
    """Pretend the current login challenge was issued ``seconds`` earlier."""
    shift = timedelta(seconds=seconds)
    async with open_session() as session:
        user = (await session.execute(select(User).where(User.email == email))).scalar_one()
        if user.login_code_issued_at is not None:
            user.login_code_issued_at -= shift
        if user.login_code_expires_at is not None:
            user.login_code_expires_at -= shift
        await session.commit()


@pytest_asyncio.fixture
async def registered_user(client: AsyncClient, mock_email_service) -> dict:
    """A verified account. Returns credentials, token and user body."""
    body = await signup_and_verify(client, mock_email_service)
    mock_email_service.send_template.reset_mock()
    return {
        "email": "learner@example.com",
        "password": PASSWORD,
        "token": body["token"],
        "user": body["user"],
    }


@pytest_asyncio.fixture
async def authed_client(client: AsyncClient, registered_user: dict) -> AsyncClient:
    client.headers["Authorization"] = f"Bearer {registered_user['token']}"
    return client


LESSON_SLIDES = [
    {"type": "completion", "order": 4, "content": {"message": "Nice work!", "xp": 50, "badge": "saver"}},
    {"type": "intro", "order": 1, "content": {"image": "piggy.png", "text": "Meet Penny."}},
    {
        "type": "question",
        "order": 3,
        "content": {
            "question": "Where should savings go?",
            "options": [
                {"id": "a", "text": "Under the bed", "correct": False},
                {"id": "b", "text": "A savings account", "correct": True},
            ],
            "multiSelect": False,
        },
    },
    {"type": "story", "order": 2, "content": {"image": "shop.png", "story": "Penny visits a shop.", "lesson": "Wait a day."}},
]

QUIZ_QUESTIONS = [
    {"question": "What is interest?", "options": ["A fee", "Money earned on savings", "A tax"], "correctAnswer": 1, "order": 1},
    {"question": "Needs come before...", "options": ["wants", "savings"], "correctAnswer": 0, "order": 2},
    {"question": "A budget is a...", "options": ["bank", "loan", "plan"], "correctAnswer": 2, "order": 3},
    {"question": "Saving early helps because of...", "options": ["luck", "compounding"], "correctAnswer": 1, "order": 4},
]
QUIZ_ANSWERS = [1, 0, 2, 1]


@pytest_asyncio.fixture
async def course(database: str) -> None:
    """Two modules: module 1 has lessons 1.1 and 1.2 plus a quiz, module 2 a quiz."""
    async with open_session() as session:
        session.add_all([
            Lesson(module_id=1, lesson_id="1", title="Why Save?", slides=LESSON_SLIDES, xp_reward=50, coin_reward=30),
            Lesson(module_id=1, lesson_id="2", title="Needs and Wants", slides=[], xp_reward=40, coin_reward=20),
            Lesson(module_id=1, lesson_id="3", title="Retired", slides=[], is_active=False),
            Quiz(module_id=1, title="Saving Basics", questions=QUIZ_QUESTIONS, passing_score=70, xp_per_question=10),
            Quiz(module_id=2, title="Budgeting", questions=QUIZ_QUESTIONS[:2], xp_per_question=10),
        ])
        await session.commit()
