# backend/app/models/upstream.py
"""
Upstream (certified exam API) payload models.

All shape checks on upstream JSON happen here, once, at the client boundary.
`GeneratedQuizPayload.from_response` never raises on partially valid tiers:
items that fail validation are dropped (and counted), a tier that is not a
list is treated as empty. Only a response with no questionnaire at all is a
parse failure.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger(__name__)

TIERS = ("easy", "medium", "hard")


class UpstreamBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class UpstreamQuizItem(UpstreamBaseModel):
    """One upstream question. Optional text fields are normalized to ''."""
    q_id: int = Field(validation_alias=AliasChoices("q_id", "id"))
    question: str = Field(min_length=1)
    option_a: str = ""
    option_b: str = ""
    option_c: str = ""
    option_d: str = ""
    correct_answer: str = ""
    scenario_title: str = Field(default="", validation_alias=AliasChoices("scenario_title", "scenarioTitle"))
    text_context: str = Field(default="", validation_alias=AliasChoices("text_context", "textContext"))
    code_snippet: str = ""
    markdown: str = ""
    # Upstream sometimes ships the misspelled `codee_image`
    code_image: str = Field(default="", validation_alias=AliasChoices("code_image", "codee_image"))

    @field_validator(
        "option_a", "option_b", "option_c", "option_d", "correct_answer",
        "scenario_title", "text_context", "code_snippet", "markdown", "code_image",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @property
    def has_scenario(self) -> bool:
        return bool(self.scenario_title.strip() or self.text_context.strip())


class GeneratedQuizPayload(UpstreamBaseModel):
    quiz_status: Optional[str] = None
    easy: List[UpstreamQuizItem] = Field(default_factory=list)
    medium: List[UpstreamQuizItem] = Field(default_factory=list)
    hard: List[UpstreamQuizItem] = Field(default_factory=list)
    dropped_items: int = 0

    def tier(self, name: str) -> List[UpstreamQuizItem]:
        return list(getattr(self, name))

    @property
    def item_count(self) -> int:
        return len(self.easy) + len(self.medium) + len(self.hard)

    @classmethod
    def from_response(cls, body: Any) -> Optional["GeneratedQuizPayload"]:
        """
        Parse the `/generate` response body.

        Accepts the full envelope (`data.quiz_question_answer.questionaire`) or a
        bare questionnaire mapping. Returns None when no questionnaire is present.
        """
        if not isinstance(body, dict):
            return None

        data = body.get("data") if isinstance(body.get("data"), dict) else body
        qa = data.get("quiz_question_answer") if isinstance(data.get("quiz_question_answer"), dict) else data
        questionnaire = qa.get("questionaire", qa.get("questionnaire"))
        if not isinstance(questionnaire, dict):
            return None

        tiers: Dict[str, List[UpstreamQuizItem]] = {}
        dropped = 0
        for name in TIERS:
            raw = questionnaire.get(name)
            if not isinstance(raw, list):
                tiers[name] = []
                continue
            items: List[UpstreamQuizItem] = []
            for entry in raw:
                try:
                    items.append(UpstreamQuizItem.model_validate(entry))
                except ValidationError as e:
                    dropped += 1
                    logger.debug("upstream.item.invalid", tier=name, errors=e.error_count())
            tiers[name] = items

        status = data.get("quiz_status") or qa.get("quiz_status")
        return cls(quiz_status=status, dropped_items=dropped, **tiers)


class CertifiedEntry(UpstreamBaseModel):
    """Result of `create_entry`."""
    skill_id: int
    subject_name: str = ""
    quiz_status: Optional[str] = None
    is_paid: bool = False

    @field_validator("is_paid", mode="before")
    @classmethod
    def _coerce_paid(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in {"1", "true", "yes", "paid"}
        return bool(v)


class UpstreamCallResult(UpstreamBaseModel):
    """Outcome of a non-fatal upstream call (save response, claim, order, analysis)."""
    success: bool
    message: str = ""
    data: Optional[Any] = None
