# backend/app/services/question_extractor.py
"""
Question Extractor

Turns a `GeneratedQuizPayload` into the canonical ordered question set of a
variant, or reports that the payload is not complete yet.

Selection per tier (easy -> medium -> hard, counts from the variant split):
  1) each preferred id is placed in its slot when the tier contains it;
  2) every slot still empty takes the earliest unused item of the tier,
     in payload order.
Preferred ids that are present keep their own slots even when an earlier
one is missing: with ids 2..5 and preferences [1, 2, 3, 4] the tier is
5, 2, 3, 4, deliberately not the first four items in payload order.
A tier that cannot fill all of its slots makes the whole extraction
`ExtractionInsufficient`; a shorter list is never returned as ready.

Within medium and hard the first selected item carrying scenario content is
moved to the front, so the scenario positions (first medium, first hard)
get a scenario whenever the tier has one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import structlog

from app.core.config import QuizVariantConfig
from app.models.db import DifficultyEnum
from app.models.upstream import GeneratedQuizPayload, UpstreamQuizItem
from app.services.code_formatting import fenced, format_markdown_content

logger = structlog.get_logger(__name__)

_TIER_DIFFICULTY = {
    "easy": DifficultyEnum.EASY,
    "medium": DifficultyEnum.MEDIUM,
    "hard": DifficultyEnum.HARD,
}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QuestionDraft:
    question_no: int
    difficulty: str
    question: str
    correct_answer: str
    quiz_id: str
    scenario: Optional[str] = None
    code_snippet_image_link: Optional[str] = None


@dataclass(frozen=True)
class ExtractionReady:
    drafts: List[QuestionDraft]


@dataclass(frozen=True)
class ExtractionInsufficient:
    available: int
    missing: Dict[str, int] = field(default_factory=dict)


ExtractionResult = Union[ExtractionReady, ExtractionInsufficient]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def scenario_positions(variant: QuizVariantConfig) -> Tuple[int, int]:
    """Sequence numbers of the first medium and first hard question."""
    first_medium = variant.split.easy + 1
    return first_medium, first_medium + variant.split.medium


def select_tier(
    items: Sequence[UpstreamQuizItem],
    count: int,
    preferred_ids: Sequence[int] = (),
) -> List[Optional[UpstreamQuizItem]]:
    """
    Return `count` slots filled by the two-pass preferred-id policy.
    Slots that could not be filled are None.
    """
    slots: List[Optional[UpstreamQuizItem]] = [None] * count
    used: set[int] = set()

    for slot, wanted in enumerate(list(preferred_ids)[:count]):
        for idx, item in enumerate(items):
            if idx not in used and item.q_id == wanted:
                slots[slot] = item
                used.add(idx)
                break

    spare = (idx for idx in range(len(items)) if idx not in used)
    for slot in range(count):
        if slots[slot] is not None:
            continue
        idx = next(spare, None)
        if idx is None:
            break
        slots[slot] = items[idx]
        used.add(idx)

    return slots


def _scenario_first(selected: List[UpstreamQuizItem]) -> List[UpstreamQuizItem]:
    for idx, item in enumerate(selected):
        if item.has_scenario:
            return [item] + selected[:idx] + selected[idx + 1:]
    return selected


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _normalize(text: str) -> str:
    return (text or "").replace("\r\n", "\n").strip()


def _enrich_inline(body: str, item: UpstreamQuizItem) -> str:
    snippet = _normalize(item.code_snippet)
    if not snippet or "```" in body:
        return body
    return f"{body}\n\n{fenced(snippet, 'js')}".strip()


def _enrich_image_markdown_raw(body: str, item: UpstreamQuizItem) -> Tuple[str, Optional[str]]:
    image = item.code_image.strip()
    if image:
        return body, image
    markdown = _normalize(item.markdown)
    if markdown:
        return f"{body}\n\n{format_markdown_content(markdown)}".strip(), None
    snippet = _normalize(item.code_snippet)
    if snippet:
        return f"{body}\n\n{fenced(snippet, 'js')}".strip(), None
    return body, None


def progress_bar(question_no: int, total: int) -> str:
    return "🟩" * question_no + "⬜" * max(total - question_no, 0)


def render_question(
    item: UpstreamQuizItem,
    *,
    question_no: int,
    total: int,
    variant: QuizVariantConfig,
) -> Tuple[str, Optional[str]]:
    """Return (rendered text, code image link)."""
    body = _normalize(item.question)
    image: Optional[str] = None
    if variant.code_enrichment == "image_markdown_raw":
        body, image = _enrich_image_markdown_raw(body, item)
    else:
        body = _enrich_inline(body, item)

    options = (
        f"A) {item.option_a}\n\n"
        f"B) {item.option_b}\n\n"
        f"C) {item.option_c}\n\n"
        f"D) {item.option_d}"
    )
    text = f"🧠 {body}\n\n{options}"
    if variant.progress_indicator:
        header = f"*Question {question_no} / {total}*\n\n{progress_bar(question_no, total)}"
        text = f"{header}\n\n{text}"
    return text, image


def compose_scenario(item: UpstreamQuizItem) -> Optional[str]:
    parts = [p for p in (item.scenario_title.strip(), item.text_context.strip()) if p]
    return "\n".join(parts) or None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract_questions(payload: GeneratedQuizPayload, variant: QuizVariantConfig) -> ExtractionResult:
    split = variant.split
    plan = (
        ("easy", split.easy, variant.preferred_ids.easy),
        ("medium", split.medium, variant.preferred_ids.medium),
        ("hard", split.hard, variant.preferred_ids.hard),
    )
    total = split.easy + split.medium + split.hard

    chosen: List[Tuple[str, UpstreamQuizItem]] = []
    missing: Dict[str, int] = {}
    available = 0
    for tier, count, preferred in plan:
        slots = select_tier(payload.tier(tier), count, preferred)
        filled = [s for s in slots if s is not None]
        available += len(filled)
        if len(filled) < count:
            missing[tier] = count - len(filled)
            continue
        if tier != "easy":
            filled = _scenario_first(filled)
        chosen.extend((tier, item) for item in filled)

    if missing:
        logger.debug("extractor.insufficient", available=available, missing=missing)
        return ExtractionInsufficient(available=available, missing=missing)

    positions = scenario_positions(variant)
    drafts: List[QuestionDraft] = []
    for question_no, (tier, item) in enumerate(chosen, start=1):
        text, image = render_question(item, question_no=question_no, total=total, variant=variant)
        drafts.append(
            QuestionDraft(
                question_no=question_no,
                difficulty=_TIER_DIFFICULTY[tier].value,
                question=text,
                correct_answer=item.correct_answer.strip(),
                quiz_id=str(item.q_id),
                scenario=compose_scenario(item) if question_no in positions else None,
                code_snippet_image_link=image,
            )
        )
    return ExtractionReady(drafts=drafts)
