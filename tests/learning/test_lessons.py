"""Tests for lesson content, progress and completion rewards."""

import asyncio

from httpx import AsyncClient
from sqlalchemy import func, select

from coinquest.db.models import LessonCompletion
from tests.conftest import open_session


class TestProgress:
    async def test_initial_progress(self, authed_client: AsyncClient):
        response = await authed_client.get("/api/v1/learning/progress")
        assert response.status_code == 200
        assert response.json() == {
            "completedLessons": [],
            "completedModules": [],
            "currentModule": 1,
            "quizScores": [],
        }

    async def test_requires_auth(self, client: AsyncClient):
        response = await client.get("/api/v1/learning/progress")
        assert response.status_code == 401


class TestLessonContent:
    async def test_slides_in_order(self, authed_client: AsyncClient, course):
        response = await authed_client.get("/api/v1/learning/lessons/1/1")
        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Why Save?"
        assert data["xpReward"] == 50
        assert data["coinReward"] == 30
        assert [s["type"] for s in data["slides"]] == ["intro", "story", "question", "completion"]

        question = data["slides"][2]["content"]
        assert question["multiSelect"] is False
        assert [o["id"] for o in question["options"]] == ["a", "b"]

    async def test_unknown_lesson(self, authed_client: AsyncClient, course):
        response = await authed_client.get("/api/v1/learning/lessons/1/9")
        assert response.status_code == 404
        assert response.json()["detail"] == "Lesson 1.9 not found"

    async def test_inactive_lesson_hidden(self, authed_client: AsyncClient, course):
        response = await authed_client.get("/api/v1/learning/lessons/1/3")
        assert response.status_code == 404


class TestLessonCompletion:
    async def test_complete_pays_reward(self, authed_client: AsyncClient, course):
        response = await authed_client.post("/api/v1/learning/lessons/1/1/complete")
        assert response.status_code == 200
        data = response.json()
        assert data["lessonKey"] == "1.1"
        assert data["alreadyCompleted"] is False
        assert data["reward"] == {
            "xpAwarded": 50,
            "coinsAwarded": 30,
            "xp": 50,
            "level": 1,
            "coinBalance": 30,
        }
        assert data["progress"]["completedLessons"] == ["1.1"]
        assert data["progress"]["currentModule"] == 1

        wallet = (await authed_client.get("/api/v1/wallet")).json()
        assert wallet["wallet"]["totalEarned"] == 30
        assert [t["reason"] for t in wallet["transactions"]] == ["Completed Lesson 1.1"]

    async def test_second_completion_pays_nothing(self, authed_client: AsyncClient, course):
        await authed_client.post("/api/v1/learning/lessons/1/1/complete")
        response = await authed_client.post("/api/v1/learning/lessons/1/1/complete")
        assert response.status_code == 200
        data = response.json()
        assert data["alreadyCompleted"] is True
        assert data["reward"]["xpAwarded"] == 0
        assert data["reward"]["coinsAwarded"] == 0
        assert data["reward"]["xp"] == 50
        assert data["reward"]["coinBalance"] == 30
        assert data["progress"]["completedLessons"] == ["1.1"]

        wallet = (await authed_client.get("/api/v1/wallet")).json()
        assert len(wallet["transactions"]) == 1

    async def test_concurrent_completions_pay_once(self, authed_client: AsyncClient, course):
        responses = await asyncio.gather(
            authed_client.post("/api/v1/learning/lessons/1/1/complete"),
            authed_client.post("/api/v1/learning/lessons/1/1/complete"),
        )
        assert all(r.status_code == 200 for r in responses)
        assert sorted(r.json()["alreadyCompleted"] for r in responses) == [False, True]

        me = (await authed_client.get("/api/v1/auth/me")).json()
        assert me["xp"] == 50

        async with open_session() as session:
            count = (await session.execute(select(func.count()).select_from(LessonCompletion))).scalar_one()
        assert count == 1

    async def test_lessons_accumulate(self, authed_client: AsyncClient, course):
        await authed_client.post("/api/v1/learning/lessons/1/1/complete")
        response = await authed_client.post("/api/v1/learning/lessons/1/2/complete")
        data = response.json()
        assert data["progress"]["completedLessons"] == ["1.1", "1.2"]
        assert data["reward"]["xp"] == 90
        assert data["reward"]["coinBalance"] == 50

    async def test_complete_unknown_lesson(self, authed_client: AsyncClient, course):
        response = await authed_client.post("/api/v1/learning/lessons/4/1/complete")
        assert response.status_code == 404

        me = (await authed_client.get("/api/v1/auth/me")).json()
        assert me["xp"] == 0
