"""Lesson slides as a closed tagged union.

Stored as JSON on the lesson row; every read goes through ``parse_slides`` so
an unknown ``type`` or a malformed slide fails loudly instead of reaching the
client.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class ImageText(BaseModel):
    image: str
    text: str | None = None


class StoryContent(BaseModel):
    image: str
    story: str | None = None
    lesson: str | None = None


class Option(BaseModel):
    id: str
    text: str
    correct: bool


class QuestionContent(BaseModel):
    question: str
    options: list[Option] = Field(..., min_length=2)
    multi_select: bool = Field(False, alias="multiSelect")

    model_config = {"populate_by_name": True}


class CompletionContent(BaseModel):
    message: str
    xp: int = Field(..., ge=0)
    badge: str | None = None


class IntroSlide(BaseModel):
    type: Literal["intro"]
    order: int
    content: ImageText


class ContentSlide(BaseModel):
    type: Literal["content"]
    order: int
    content: ImageText


class StorySlide(BaseModel):
    type: Literal["story"]
    order: int
    content: StoryContent


class QuestionSlide(BaseModel):
    type: Literal["question"]
    order: int
    content: QuestionContent


class CompletionSlide(BaseModel):
    type: Literal["completion"]
    order: int
    content: CompletionContent


Slide = Annotated[
    Union[IntroSlide, ContentSlide, StorySlide, QuestionSlide, CompletionSlide],
    Field(discriminator="type"),
]

_slides_adapter: TypeAdapter[list[Slide]] = TypeAdapter(list[Slide])


def parse_slides(raw: list[dict[str, Any]]) -> list[Slide]:
    """Validate stored slide JSON and return the slides in display order."""
    slides = _slides_adapter.validate_python(raw)
    return sorted(slides, key=lambda s: s.order)


def dump_slides(slides: list[Slide]) -> list[dict[str, Any]]:
    return _slides_adapter.dump_python(slides, by_alias=True)
