# refinery/models/content.py
"""
Typed payloads for content lifecycle items.

Every lifecycle row stores its payload as JSON next to a ``data_type``
column. These models give each data type a uniform interface:

- ``dedup_key()``: the natural key used to recognize the same item across
  lifecycle stages (meaning -> word, rule -> title, utterance -> text,
  exercise -> prompt)
- ``gate_text()``: the text handed to quality gates

Usage:
    from refinery.models.content import parse_payload

    payload = parse_payload("meaning", {"word": "Hola", "definition": "hello"})
    payload.dedup_key()   # "hola"
"""

import json
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


class DataType(str, Enum):
    """Lifecycle data types."""
    MEANING = "meaning"
    RULE = "rule"
    UTTERANCE = "utterance"
    EXERCISE = "exercise"


# Review queue priority per data type (lower is reviewed first)
REVIEW_PRIORITY: Dict[str, int] = {
    DataType.RULE.value: 1,
    DataType.MEANING.value: 2,
    DataType.UTTERANCE.value: 3,
    DataType.EXERCISE.value: 4,
}
DEFAULT_REVIEW_PRIORITY = 10


def review_priority(data_type: str) -> int:
    return REVIEW_PRIORITY.get(data_type, DEFAULT_REVIEW_PRIORITY)


def normalize_key(value: Any) -> Optional[str]:
    """Trim and case-fold a dedup key; empty values have no key."""
    if value is None:
        return None
    key = " ".join(str(value).split()).casefold()
    return key or None


class ContentPayload(BaseModel):
    """Base payload. Unknown fields are preserved."""

    model_config = ConfigDict(extra="allow")

    data_type: ClassVar[str] = ""
    key_field: ClassVar[Optional[str]] = None
    required_fields: ClassVar[tuple] = ()

    # Order in which payload fields are tried when building gate text
    TEXT_FIELDS: ClassVar[tuple] = (
        "text",
        "content",
        "prompt",
        "title",
        "explanation",
        "definition",
        "word",
    )

    def dedup_key(self) -> Optional[str]:
        if not self.key_field:
            return None
        return normalize_key(getattr(self, self.key_field, None))

    def gate_text(self) -> str:
        data = self.model_dump()
        for field in self.TEXT_FIELDS:
            value = data.get(field)
            if isinstance(value, str) and value.strip():
                return value
        examples = data.get("examples")
        if isinstance(examples, list) and examples:
            return str(examples[0])
        return json.dumps(data, ensure_ascii=False, default=str)

    def missing_fields(self) -> List[str]:
        data = self.model_dump()
        return [
            name for name in self.required_fields
            if data.get(name) is None or (isinstance(data.get(name), str) and not data[name].strip())
        ]


class MeaningPayload(ContentPayload):
    """Vocabulary meaning (a word with its definition)."""

    data_type: ClassVar[str] = DataType.MEANING.value
    key_field: ClassVar[Optional[str]] = "word"
    required_fields: ClassVar[tuple] = ("word", "definition")

    word: Optional[str] = None
    definition: Optional[str] = None
    part_of_speech: Optional[str] = None
    level: Optional[str] = None
    language: Optional[str] = None
    examples: List[str] = Field(default_factory=list)

    def gate_text(self) -> str:
        if self.word and self.definition:
            return f"{self.word}: {self.definition}"
        return super().gate_text()


class RulePayload(ContentPayload):
    """Grammar rule."""

    data_type: ClassVar[str] = DataType.RULE.value
    key_field: ClassVar[Optional[str]] = "title"
    required_fields: ClassVar[tuple] = ("title", "explanation")

    title: Optional[str] = None
    explanation: Optional[str] = None
    category: Optional[str] = None
    level: Optional[str] = None
    language: Optional[str] = None
    examples: List[Any] = Field(default_factory=list)


class UtterancePayload(ContentPayload):
    """Example sentence or phrase."""

    data_type: ClassVar[str] = DataType.UTTERANCE.value
    key_field: ClassVar[Optional[str]] = "text"
    required_fields: ClassVar[tuple] = ("text",)

    text: Optional[str] = None
    translation: Optional[str] = None
    meaning_id: Optional[str] = None
    level: Optional[str] = None
    language: Optional[str] = None


class ExercisePayload(ContentPayload):
    """Practice exercise."""

    data_type: ClassVar[str] = DataType.EXERCISE.value
    key_field: ClassVar[Optional[str]] = "prompt"
    required_fields: ClassVar[tuple] = ("prompt",)

    prompt: Optional[str] = None
    exercise_type: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    correct_answer: Optional[Any] = None
    level: Optional[str] = None
    language: Optional[str] = None


class GenericPayload(ContentPayload):
    """Payload of a data type without a dedicated model; has no dedup key."""
    pass


PAYLOAD_TYPES: Dict[str, Type[ContentPayload]] = {
    DataType.MEANING.value: MeaningPayload,
    DataType.RULE.value: RulePayload,
    DataType.UTTERANCE.value: UtterancePayload,
    DataType.EXERCISE.value: ExercisePayload,
}


def parse_payload(data_type: str, data: Optional[Dict[str, Any]]) -> ContentPayload:
    """Build the typed payload for a lifecycle row."""
    model = PAYLOAD_TYPES.get(data_type, GenericPayload)
    return model.model_validate(data or {})
