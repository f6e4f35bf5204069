"""Learning request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from coinquest.rewards.schemas import RewardSummary
from coinquest.schemas import CamelModel


class QuizScore(CamelModel):
    quiz_id: str
    score: int
    total: int
    time_spent: int = 0
    date: datetime


class ProgressResponse(CamelModel):
    completed_lessons: list[str]
    completed_modules: list[int]
    current_module: int
    quiz_scores: list[QuizScore]


class LessonResponse(CamelModel):
    module_id: int
    lesson_id: str
    title: str
    description: str | None = None
    xp_reward: int
    coin_reward: int
    slides: list[dict[str, Any]]


class LessonCompleteResponse(CamelModel):
    lesson_key: str
    already_completed: bool
    reward: RewardSummary
    progress: ProgressResponse


class QuizQuestion(CamelModel):
    """Stored question; ``correct_answer`` is an index into ``options``."""

    question: str
    options: list[str] = Field(..., min_length=2)
    correct_answer: int = Field(..., ge=0)
    order: int = 0


class PublicQuizQuestion(CamelModel):
    question: str
    options: list[str]


class QuizResponse(CamelModel):
    module_id: int
    title: str
    passing_score: int
    xp_per_question: int
    questions: list[PublicQuizQuestion]


class QuizSubmitRequest(CamelModel):
    answers: list[int] = Field(..., max_length=200)
    time_spent: int = Field(0, ge=0)


class QuizSubmitResponse(CamelModel):
    quiz: QuizScore
    percentage: float
    passed: bool
    module_completed: bool
    reward: RewardSummary
    progress: ProgressResponse
