# refinery/models/curriculum.py
"""
Curriculum definitions loaded by the seed command.

A curriculum file lists CEFR levels per language, each with its topics:

    levels:
      - language: ES
        cefr_level: A1
        name: Spanish A1
        topics:
          - name: Greetings
            content_type: vocabulary
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

CONTENT_TYPES = ("vocabulary", "grammar", "orthography", "mixed")


class TopicDefinition(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    content_type: str = "vocabulary"
    sort_order: Optional[int] = None

    @field_validator("content_type")
    @classmethod
    def check_content_type(cls, v: str) -> str:
        v = v.lower()
        if v not in CONTENT_TYPES:
            raise ValueError(f"content_type must be one of {', '.join(CONTENT_TYPES)}")
        return v


class LevelDefinition(BaseModel):
    language: str = Field(..., min_length=2, max_length=10)
    cefr_level: str = Field(..., pattern=r"^[ABCabc][12]$")
    name: Optional[str] = None
    sort_order: Optional[int] = None
    topics: List[TopicDefinition] = Field(default_factory=list)

    @field_validator("language", "cefr_level")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.upper()


class CurriculumDefinition(BaseModel):
    levels: List[LevelDefinition] = Field(default_factory=list)
