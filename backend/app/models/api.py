# backend/app/models/api.py
"""
API Models (Pydantic Schemas)

Request and response models for the quiz endpoints. The wire contract is
snake_case; the one exception is `code_snippet_imageLink`, which existing
clients already read, so it is exposed through an alias.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# -----------------------------------------------------------------------------
# Base model
# -----------------------------------------------------------------------------
class APIBaseModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
    )


def _strip(v: Any) -> Any:
    return v.strip() if isinstance(v, str) else v


# -----------------------------------------------------------------------------
# Start / resume
# -----------------------------------------------------------------------------
class StartQuizRequest(APIBaseModel):
    phone: str = Field(..., min_length=3, max_length=32)
    subject: str = Field(..., min_length=1, max_length=200)
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)
    session_id: Optional[UUID] = None

    @field_validator("phone", "subject", "name", "email", mode="before")
    @classmethod
    def _strip_text(cls, v: Any) -> Any:
        return _strip(v)

    @field_validator("name", "email")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class UserOut(APIBaseModel):
    id: UUID
    name: str
    email: Optional[str] = None
    phone: str
    subject: str


class CertifiedSkillOut(APIBaseModel):
    id: int
    subject: str
    variant: str
    paid: bool = False


class SessionOut(APIBaseModel):
    id: UUID
    subject: str
    created_at: Optional[datetime] = None
    started_quiz: bool = False
    attempted: bool = False
    quiz_completed: bool = False
    quiz_analysis_generated: bool = False
    generation_state: str


class QuestionTypes(APIBaseModel):
    easy: int = 0
    medium: int = 0
    hard: int = 0


class QuizSummary(APIBaseModel):
    total_questions: int
    questions_generated: bool
    question_types: QuestionTypes


class QuestionOut(APIBaseModel):
    question_id: UUID
    question_no: int
    question: str
    scenario: str = ""
    code_snippet_image_link: Optional[str] = Field(default=None, serialization_alias="code_snippet_imageLink")
    has_code_image: bool = False


class StartQuizResponse(APIBaseModel):
    user: UserOut
    certified_skill: CertifiedSkillOut
    session: SessionOut
    quiz: QuizSummary
    first_question: Optional[QuestionOut] = None
    question_added: bool


# -----------------------------------------------------------------------------
# Answers
# -----------------------------------------------------------------------------
class SaveAnswerRequest(APIBaseModel):
    question_id: UUID
    answer: str = Field(..., min_length=1, max_length=1)

    @field_validator("answer", mode="before")
    @classmethod
    def _strip_answer(cls, v: Any) -> Any:
        return _strip(v)


class SaveAnswerResponse(APIBaseModel):
    status: Literal["pending", "complete"]
    question: str = ""
    question_id: Optional[UUID] = None
    question_no: Optional[int] = None
    current_question_no: int
    total_questions: int
    scenario: Optional[str] = None
    code_snippet_image_link: Optional[str] = Field(default=None, serialization_alias="code_snippet_imageLink")
    has_code_image: Optional[bool] = None


# -----------------------------------------------------------------------------
# Submission
# -----------------------------------------------------------------------------
class SubmitQuizRequest(APIBaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    subject: Optional[str] = None
    skip_create_v2_test: bool = False

    @field_validator("email", "phone", "subject", mode="before")
    @classmethod
    def _strip_text(cls, v: Any) -> Any:
        return _strip(v)

    @model_validator(mode="after")
    def _identity_present(self) -> "SubmitQuizRequest":
        if not self.email and not (self.phone and self.subject):
            raise ValueError("provide email, or phone and subject")
        return self


class AutoSubmitRequest(APIBaseModel):
    phone: str = Field(..., min_length=3, max_length=32)
    subject: str = Field(..., min_length=1, max_length=200)
    skip_create_v2_test: bool = False

    @field_validator("phone", "subject", mode="before")
    @classmethod
    def _strip_text(cls, v: Any) -> Any:
        return _strip(v)


class UpstreamStepOut(APIBaseModel):
    success: bool
    message: str = ""


class SubmitQuizResponse(APIBaseModel):
    session_id: UUID
    score: int
    correct_answers: int
    total_questions: int
    score_band: str
    completion_time_seconds: int
    order_id: Optional[str] = None
    analysis: Optional[Any] = None
    steps: Dict[str, UpstreamStepOut] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Generation status
# -----------------------------------------------------------------------------
class PollStatus(APIBaseModel):
    """Snapshot written by the background poller after each attempt."""
    session_id: UUID
    state: str = "generating"
    attempt: int = 0
    drafts: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[float] = None


class QuizStatusResponse(APIBaseModel):
    session_id: UUID
    state: str
    question_count: int
    total_questions: int
    questions_generated: bool
    poller_active: bool
    last_poll: Optional[PollStatus] = None
