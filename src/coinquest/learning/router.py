"""Learning endpoints under /api/v1/learning."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coinquest.auth.dependencies import get_current_user
from coinquest.database import get_session
from coinquest.db.models import Progress, User
from coinquest.learning.schemas import (
    LessonCompleteResponse,
    LessonResponse,
    ProgressResponse,
    PublicQuizQuestion,
    QuizResponse,
    QuizScore,
    QuizSubmitRequest,
    QuizSubmitResponse,
)
from coinquest.learning.service import LearningService, LessonCompletionResult, QuizResult
from coinquest.learning.slides import dump_slides
from coinquest.rewards.schemas import RewardSummary

router = APIRouter(prefix="/api/v1/learning", tags=["Learning"])


def _progress(progress: Progress) -> ProgressResponse:
    return ProgressResponse(
        completed_lessons=list(progress.completed_lessons),
        completed_modules=list(progress.completed_modules),
        current_module=progress.current_module,
        quiz_scores=[QuizScore.model_validate(s) for s in progress.quiz_scores],
    )


def _reward(result: LessonCompletionResult | QuizResult) -> RewardSummary:
    return RewardSummary(
        xp_awarded=result.xp_awarded,
        coins_awarded=result.coins_awarded,
        xp=result.user.xp,
        level=result.user.level,
        coin_balance=result.wallet.coin_balance,
    )


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> ProgressResponse:
    progress = await LearningService(db).get_progress(user.id)
    return _progress(progress)


@router.get("/lessons/{module_id}/{lesson_id}", response_model=LessonResponse)
async def get_lesson(
    module_id: int,
    lesson_id: str,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> LessonResponse:
    """Lesson content with validated slides."""
    lesson, slides = await LearningService(db).get_lesson(module_id, lesson_id)
    return LessonResponse(
        module_id=lesson.module_id,
        lesson_id=lesson.lesson_id,
        title=lesson.title,
        description=lesson.description,
        xp_reward=lesson.xp_reward,
        coin_reward=lesson.coin_reward,
        slides=dump_slides(slides),
    )


@router.post("/lessons/{module_id}/{lesson_id}/complete", response_model=LessonCompleteResponse)
async def complete_lesson(
    module_id: int,
    lesson_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> LessonCompleteResponse:
    """Record a lesson completion and pay its reward once."""
    result = await LearningService(db).complete_lesson(user.id, module_id, lesson_id)
    return LessonCompleteResponse(
        lesson_key=result.lesson_key,
        already_completed=result.already_completed,
        reward=_reward(result),
        progress=_progress(result.progress),
    )


@router.get("/quizzes/{module_id}", response_model=QuizResponse)
async def get_quiz(
    module_id: int,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> QuizResponse:
    """Quiz questions without their answers."""
    quiz, questions = await LearningService(db).get_quiz(module_id)
    return QuizResponse(
        module_id=quiz.module_id,
        title=quiz.title,
        passing_score=LearningService.passing_score(quiz),
        xp_per_question=quiz.xp_per_question,
        questions=[PublicQuizQuestion(question=q.question, options=q.options) for q in questions],
    )


@router.post("/quizzes/{module_id}/submit", response_model=QuizSubmitResponse)
async def submit_quiz(
    module_id: int,
    body: QuizSubmitRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> QuizSubmitResponse:
    """Score a quiz attempt; passing completes the module."""
    result = await LearningService(db).submit_quiz(user.id, module_id, body.answers, body.time_spent)
    return QuizSubmitResponse(
        quiz=QuizScore.model_validate(result.entry),
        percentage=result.percentage,
        passed=result.passed,
        module_completed=result.module_completed,
        reward=_reward(result),
        progress=_progress(result.progress),
    )
