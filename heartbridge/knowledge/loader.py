"""Knowledge item loading and normalization.

Turns CSV rows (or API payloads) into ``KnowledgeItem`` objects and builds the
text that is stored and embedded for each unit.
"""

import logging
import re
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from pydantic import BaseModel, Field, field_validator, model_validator

from heartbridge.models.knowledge import Importance

logger = logging.getLogger(__name__)

CATEGORIES = (
    "general",
    "intervention",
    "communication",
    "behavior",
    "social_skills",
    "sensory",
)
DEFAULT_CATEGORY = "general"

# Free-text category aliases seen in imported sheets
_CATEGORY_ALIASES = {
    "interventions": "intervention",
    "therapy": "intervention",
    "treatment": "intervention",
    "aba": "intervention",
    "speech": "communication",
    "language": "communication",
    "communications": "communication",
    "behaviour": "behavior",
    "behaviors": "behavior",
    "behavioural": "behavior",
    "behavioral": "behavior",
    "social": "social_skills",
    "social skills": "social_skills",
    "social-skills": "social_skills",
    "socialization": "social_skills",
    "sensory processing": "sensory",
    "sensory issues": "sensory",
}

_LIST_SPLIT = re.compile(r"[;,]")

CSV_COLUMNS = (
    "question",
    "answer",
    "content",
    "category",
    "importance",
    "keywords",
    "labels",
    "source_name",
)


def normalize_category(raw: Optional[str]) -> str:
    """Map a free-text category onto the closed label set."""
    if not raw or not str(raw).strip():
        return DEFAULT_CATEGORY
    value = str(raw).strip().lower()
    if value in CATEGORIES:
        return value
    if value in _CATEGORY_ALIASES:
        return _CATEGORY_ALIASES[value]
    value = value.replace("-", "_").replace(" ", "_")
    if value in CATEGORIES:
        return value
    return DEFAULT_CATEGORY


def normalize_importance(raw: Optional[str]) -> str:
    if not raw or not str(raw).strip():
        return Importance.MEDIUM.value
    value = str(raw).strip().lower()
    allowed = {i.value for i in Importance}
    return value if value in allowed else Importance.MEDIUM.value


def split_terms(raw: Any) -> list[str]:
    """Split a ``;`` or ``,`` separated cell (or list) into clean terms."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        parts = [str(p) for p in raw]
    else:
        if isinstance(raw, float) and pd.isna(raw):
            return []
        parts = _LIST_SPLIT.split(str(raw))

    seen: set[str] = set()
    terms: list[str] = []
    for part in parts:
        term = part.strip()
        if term and term.lower() not in seen:
            seen.add(term.lower())
            terms.append(term)
    return terms


class KnowledgeItem(BaseModel):
    """A knowledge unit as supplied by an import or the management API."""

    question: Optional[str] = None
    answer: Optional[str] = None
    content: Optional[str] = None
    category: str = DEFAULT_CATEGORY
    importance: str = Importance.MEDIUM.value
    keywords: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    source_name: Optional[str] = None
    # Category as written in the source, before normalization
    source_category: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _keep_source_category(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("source_category"):
            raw = data.get("category")
            if isinstance(raw, str) and raw.strip():
                data = {**data, "source_category": raw.strip()}
        return data

    @field_validator("question", "answer", "content", "source_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, float) and pd.isna(value):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> str:
        return normalize_category(value if isinstance(value, str) else None)

    @field_validator("importance", mode="before")
    @classmethod
    def _importance(cls, value: Any) -> str:
        return normalize_importance(value if isinstance(value, str) else None)

    @field_validator("keywords", "labels", mode="before")
    @classmethod
    def _terms(cls, value: Any) -> list[str]:
        return split_terms(value)

    @property
    def is_qa(self) -> bool:
        return bool(self.question and self.answer)


class UnitContent(BaseModel):
    content: str
    data_type: str
    entities: Optional[dict[str, Any]] = None


def build_unit_content(item: KnowledgeItem) -> UnitContent:
    """Build the stored text for an item.

    Q&A items become ``"Question: ...\\nAnswer: ..."`` with the pair and the
    source category kept in ``entities`` so the generator can render it verbatim.

    Raises:
        ValueError: If the item has neither a Q&A pair nor content.
    """
    if item.is_qa:
        return UnitContent(
            content=f"Question: {item.question}\nAnswer: {item.answer}",
            data_type="qa",
            entities={
                "question": item.question,
                "answer": item.answer,
                "category": item.source_category or item.category,
            },
        )
    if item.content:
        return UnitContent(content=item.content, data_type="text")
    raise ValueError("Knowledge item has no content")


def load_knowledge_csv(path: Path | str) -> list[KnowledgeItem]:
    """Read knowledge items from a CSV file.

    Unknown columns are ignored; missing ones default. Rows that fail
    validation are logged and skipped.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Knowledge CSV not found: {path}")

    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.columns = [str(c).strip().lower() for c in df.columns]
    present = [c for c in CSV_COLUMNS if c in df.columns]

    items: list[KnowledgeItem] = []
    for row_number, row in enumerate(df[present].to_dict(orient="records"), start=2):
        try:
            items.append(KnowledgeItem(**row))
        except ValueError as e:
            logger.warning(f"Skipping row {row_number} of {path.name}: {e}")

    logger.info(f"Loaded {len(items)} knowledge items from {path.name}")
    return items
