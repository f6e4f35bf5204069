"""Learning service: lesson content, completion tracking, quiz scoring.

Every completion goes through the reward ledger on the same session, and the
service commits once at the end, so progress, XP and coins persist together.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinquest.config import get_settings
from coinquest.db.base import upsert_insert
from coinquest.db.models import Lesson, LessonCompletion, Progress, Quiz, User, Wallet
from coinquest.errors import NotFound, ValidationError
from coinquest.learning.schemas import QuizQuestion
from coinquest.learning.slides import Slide, parse_slides
from coinquest.rewards.ledger import ensure_companions, grant

logger = structlog.get_logger()


def lesson_key(module_id: int, lesson_id: str) -> str:
    return f"{module_id}.{lesson_id}"


def quiz_key(module_id: int) -> str:
    return f"quiz-{module_id}"


@dataclass
class LessonCompletionResult:
    lesson_key: str
    already_completed: bool
    xp_awarded: int
    coins_awarded: int
    user: User
    wallet: Wallet
    progress: Progress


@dataclass
class QuizResult:
    entry: dict[str, Any]
    percentage: float
    passed: bool
    module_completed: bool
    xp_awarded: int
    coins_awarded: int
    user: User
    wallet: Wallet
    progress: Progress


class LearningService:
    """Progress aggregate plus the lesson/quiz actions that feed the ledger."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # --- Content ---

    async def get_lesson(self, module_id: int, lesson_id: str) -> tuple[Lesson, list[Slide]]:
        result = await self.db.execute(
            select(Lesson).where(
                Lesson.module_id == module_id,
                Lesson.lesson_id == lesson_id,
                Lesson.is_active.is_(True),
            )
        )
        lesson = result.scalar_one_or_none()
        if lesson is None:
            msg = f"Lesson {lesson_key(module_id, lesson_id)} not found"
            raise NotFound(msg)
        return lesson, parse_slides(lesson.slides)

    @staticmethod
    def passing_score(quiz: Quiz) -> int:
        if quiz.passing_score is not None:
            return quiz.passing_score
        return get_settings().quiz_passing_percentage

    async def get_quiz(self, module_id: int) -> tuple[Quiz, list[QuizQuestion]]:
        result = await self.db.execute(
            select(Quiz).where(Quiz.module_id == module_id, Quiz.is_active.is_(True))
        )
        quiz = result.scalar_one_or_none()
        if quiz is None:
            msg = "Quiz not found for this module"
            raise NotFound(msg)
        questions = sorted(
            (QuizQuestion.model_validate(q) for q in quiz.questions),
            key=lambda q: q.order,
        )
        return quiz, questions

    # --- Progress ---

    async def get_progress(self, user_id: int) -> Progress:
        _, progress = await ensure_companions(self.db, user_id)
        await self.db.commit()
        return progress

    async def _lock_progress(self, user_id: int, now: datetime) -> Progress:
        """Load the progress row for update (row lock on PostgreSQL)."""
        await ensure_companions(self.db, user_id, now)
        result = await self.db.execute(
            select(Progress)
            .where(Progress.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _module_count(self) -> int:
        result = await self.db.execute(
            select(func.count(distinct(Quiz.module_id))).where(Quiz.is_active.is_(True))
        )
        return result.scalar() or 0

    # --- Actions ---

    async def complete_lesson(
        self,
        user_id: int,
        module_id: int,
        lesson_id: str,
        now: datetime | None = None,
    ) -> LessonCompletionResult:
        """
        Mark a lesson complete and pay its reward.

        Completing a lesson a second time records nothing and grants nothing.
        The completion row's unique key decides which request wins a race.
        """
        now = now or datetime.now(timezone.utc)
        lesson, _ = await self.get_lesson(module_id, lesson_id)
        key = lesson_key(module_id, lesson_id)

        insert = upsert_insert(self.db)
        claimed = await self.db.execute(
            insert(LessonCompletion)
            .values(user_id=user_id, lesson_key=key, completed_at=now)
            .on_conflict_do_nothing(index_elements=["user_id", "lesson_key"])
        )
        if claimed.rowcount == 0:  # type: ignore[attr-defined]
            wallet, progress = await ensure_companions(self.db, user_id, now)
            user = await self.db.get(User, user_id, populate_existing=True)
            await self.db.commit()
            if user is None:
                msg = "User not found"
                raise NotFound(msg)
            return LessonCompletionResult(
                key,
                already_completed=True,
                xp_awarded=0,
                coins_awarded=0,
                user=user,
                wallet=wallet,
                progress=progress,
            )

        progress = await self._lock_progress(user_id, now)
        if key not in progress.completed_lessons:
            progress.completed_lessons = [*progress.completed_lessons, key]
        progress.current_module = max(progress.current_module, module_id)
        progress.updated_at = now

        reward = await grant(
            self.db,
            user_id,
            xp_delta=lesson.xp_reward,
            currency_delta=lesson.coin_reward,
            reason=f"Completed Lesson {key}",
            now=now,
        )
        await self.db.commit()
        logger.info("lesson_completed", user_id=user_id, lesson=key, xp=lesson.xp_reward, coins=lesson.coin_reward)
        return LessonCompletionResult(
            key,
            already_completed=False,
            xp_awarded=lesson.xp_reward,
            coins_awarded=lesson.coin_reward,
            user=reward.user,
            wallet=reward.wallet,
            progress=progress,
        )

    async def submit_quiz(
        self,
        user_id: int,
        module_id: int,
        answers: list[int],
        time_spent: int = 0,
        now: datetime | None = None,
    ) -> QuizResult:
        """
        Score a quiz attempt and pay for correct answers.

        The latest attempt replaces any earlier score for the same quiz.
        Reaching the passing percentage completes the module.

        Raises:
            NotFound: No active quiz for this module.
            ValidationError: Answer count differs from question count.
        """
        now = now or datetime.now(timezone.utc)
        quiz, questions = await self.get_quiz(module_id)
        if not questions:
            msg = "Quiz has no questions"
            raise NotFound(msg)
        if len(answers) != len(questions):
            msg = "Answer count mismatch"
            raise ValidationError(msg, expected=len(questions), received=len(answers))

        score = sum(1 for answer, q in zip(answers, questions) if answer == q.correct_answer)
        total = len(questions)
        percentage = score / total * 100
        passed = percentage >= self.passing_score(quiz)

        qid = quiz_key(module_id)
        entry = {
            "quizId": qid,
            "score": score,
            "total": total,
            "timeSpent": time_spent,
            "date": now.isoformat(),
        }

        progress = await self._lock_progress(user_id, now)
        progress.quiz_scores = [*(s for s in progress.quiz_scores if s.get("quizId") != qid), entry]

        module_completed = False
        if passed and module_id not in progress.completed_modules:
            progress.completed_modules = [*progress.completed_modules, module_id]
            module_count = await self._module_count()
            progress.current_module = max(progress.current_module, min(module_id + 1, max(module_count, 1)))
            module_completed = True
        progress.updated_at = now

        xp_awarded = score * quiz.xp_per_question
        coins_awarded = math.floor(percentage)
        reward = await grant(
            self.db,
            user_id,
            xp_delta=xp_awarded,
            currency_delta=coins_awarded,
            reason=f"Quiz {qid}: {score}/{total}",
            now=now,
        )
        await self.db.commit()
        logger.info(
            "quiz_submitted",
            user_id=user_id,
            quiz=qid,
            score=score,
            total=total,
            passed=passed,
        )
        return QuizResult(
            entry=entry,
            percentage=percentage,
            passed=passed,
            module_completed=module_completed,
            xp_awarded=xp_awarded,
            coins_awarded=coins_awarded,
            user=reward.user,
            wallet=reward.wallet,
            progress=progress,
        )
