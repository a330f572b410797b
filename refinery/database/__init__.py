# refinery/database/__init__.py
"""
Database package for Refinery.

Provides the SQLAlchemy declarative base and models.
"""

from .base import Base
from .models import (
    Candidate,
    ContentTask,
    CurriculumLevel,
    CurriculumTopic,
    Document,
    DocumentChunk,
    Draft,
    LifecycleEvent,
    Pipeline,
    PipelineTask,
    RejectedItem,
    ReviewQueueEntry,
    TopicMapping,
    TransformationJob,
    ValidatedItem,
)

__all__ = [
    "Base",
    "Candidate",
    "ContentTask",
    "CurriculumLevel",
    "CurriculumTopic",
    "Document",
    "DocumentChunk",
    "Draft",
    "LifecycleEvent",
    "Pipeline",
    "PipelineTask",
    "RejectedItem",
    "ReviewQueueEntry",
    "TopicMapping",
    "TransformationJob",
    "ValidatedItem",
]
