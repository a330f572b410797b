# refinery/database/models.py
"""
SQLAlchemy ORM models for the Refinery content pipeline.

Models:
    Source material:
    - Document: Uploaded textbook awaiting or finished with extraction
    - DocumentPage: Extracted text of one page
    - DocumentChunk: Chunk of extracted text handed to semantic mapping
    - DocumentProcessingLog: Per-step processing audit trail
    - CurriculumLevel / CurriculumTopic: Curriculum the chunks are mapped onto
    - TopicMapping: Chunk-to-topic mapping awaiting or after human confirmation

    Orchestration:
    - Pipeline: One workflow instance per document
    - PipelineTask: Node of a pipeline's single-predecessor task graph
    - ContentTask: Tracks one lifecycle item spawned by a pipeline

    Content lifecycle:
    - TransformationJob: Audit row for one transformation attempt
    - Draft / Candidate / ValidatedItem / ApprovedItem / RejectedItem
    - ReviewQueueEntry: Validated items waiting for a human decision
    - ValidationFailure: Per-gate failure diagnostics
    - LifecycleEvent: Append-only audit log of lifecycle writes

    Worker state:
    - WorkItem: External prioritized work queue
    - ServiceCheckpoint: Last unit of work completed by a service
    - ServiceError: Error checkpoints written by the worker loop

All models use UUID primary keys and include timestamps for auditing.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from .base import Base


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# =============================================================================
# SOURCE MATERIAL
# =============================================================================


class Document(Base):
    """
    Uploaded source document (usually a textbook).

    Owned by the upload collaborator: it creates the row in ``pending`` and
    registers the document's pipeline. Extraction moves it to ``ready`` or
    ``error``.

    Attributes:
        id: Unique document identifier
        filename: Original file name
        storage_path: Where the file bytes live
        language: Language code of the content (EN, ES, IT, ...)
        target_level: CEFR level the textbook targets (A1 ... C2)
        status: pending, ready, error
        total_pages: Number of extracted pages
        error_message: Last extraction/chunking error
    """

    __tablename__ = "documents"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    filename = Column(String(500), nullable=False)
    storage_path = Column(String(1000), nullable=False)
    language = Column(String(10), nullable=False, default="EN")
    target_level = Column(String(5), nullable=True)

    status = Column(String(50), nullable=False, default="pending", index=True)
    total_pages = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class DocumentPage(Base):
    """Extracted text of a single document page."""

    __tablename__ = "document_pages"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    document_id = Column(
        UUID(), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    page_number = Column(Integer, nullable=False)
    text = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("document_id", "page_number", name="uq_document_pages_number"),
    )


class DocumentChunk(Base):
    """
    Chunk of extracted document text.

    Attributes:
        chunk_index: Zero-based position within the document
        page_number: Page the chunk starts on
        chunk_type: paragraph, heading, list, table, ...
        confidence: Chunker confidence (0.0 - 1.0)
    """

    __tablename__ = "document_chunks"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    document_id = Column(
        UUID(), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    chunk_index = Column(Integer, nullable=False)
    page_number = Column(Integer, nullable=True)
    text = Column(Text, nullable=False)
    chunk_type = Column(String(50), nullable=False, default="paragraph")
    confidence = Column(Float, nullable=True)
    word_count = Column(Integer, nullable=False, default=0)
    char_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_document_chunks_document_index", "document_id", "chunk_index"),
    )


class DocumentProcessingLog(Base):
    """Per-step processing log for documents (extract, chunk, cleanup)."""

    __tablename__ = "document_processing_log"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(), nullable=False, index=True)
    step = Column(String(50), nullable=False)
    status = Column(String(50), nullable=False)  # started, completed, failed
    message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class CurriculumLevel(Base):
    """CEFR level of the curriculum for one language."""

    __tablename__ = "curriculum_levels"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    language = Column(String(10), nullable=False, index=True)
    cefr_level = Column(String(5), nullable=False)
    name = Column(String(255), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("language", "cefr_level", name="uq_curriculum_levels_language_level"),
    )


class CurriculumTopic(Base):
    """
    Topic within a curriculum level.

    Attributes:
        content_type: vocabulary, grammar, orthography, mixed
    """

    __tablename__ = "curriculum_topics"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    level_id = Column(
        UUID(), ForeignKey("curriculum_levels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    content_type = Column(String(50), nullable=False, default="vocabulary")
    sort_order = Column(Integer, nullable=False, default=0)


class TopicMapping(Base):
    """
    Mapping between a document chunk and a curriculum topic.

    Created by semantic mapping as ``auto_mapped``. A human reviewer flips
    it to ``confirmed`` (or ``rejected``). Only confirmed mappings are
    transformed into content.
    """

    __tablename__ = "topic_mappings"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    chunk_id = Column(
        UUID(), ForeignKey("document_chunks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    topic_id = Column(
        UUID(), ForeignKey("curriculum_topics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    confidence = Column(Float, nullable=False, default=0.0)
    reasoning = Column(Text, nullable=True)
    status = Column(String(50), nullable=False, default="auto_mapped", index=True)
    confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("chunk_id", "topic_id", name="uq_topic_mappings_chunk_topic"),
    )


# =============================================================================
# ORCHESTRATION
# =============================================================================


class Pipeline(Base):
    """
    Per-document workflow instance.

    Exactly one pipeline exists per document (unique ``document_id``,
    created through get-or-create).

    Attributes:
        status: pending, processing, completed, failed, cancelled
        current_stage: Advisory label (created, extracting, chunking,
            mapping, transforming, validating, completed). Mutated by each
            dispatch branch, not a guarded state machine.
        total_tasks: Number of tasks ever created for this pipeline
        completed_tasks: Tasks currently completed
        failed_tasks: Tasks currently failed

    Status Transitions:
        pending -> processing -> completed
        pending -> processing -> failed
        completed -> processing (reopening on late mapping confirmation)
        failed -> processing (explicit retry)
    """

    __tablename__ = "pipelines"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    document_id = Column(
        UUID(), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    status = Column(String(50), nullable=False, default="pending", index=True)
    current_stage = Column(String(50), nullable=False, default="created", index=True)

    total_tasks = Column(Integer, nullable=False, default=0)
    completed_tasks = Column(Integer, nullable=False, default=0)
    failed_tasks = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class PipelineTask(Base):
    """
    Node of a pipeline's task graph.

    Each task has at most one predecessor. A task is eligible to run when
    it is pending and its predecessor (if any) is completed. Tasks are never
    deleted, only transitioned.

    Attributes:
        item_id: Document, chunk, mapping or candidate id depending on task_type
        item_type: document, chunk, mapping, candidate
        task_type: extract, chunk, map, transform, validate, approve
        status: pending, processing, completed, failed
        stage: Optional advisory stage recorded with the last transition
        retry_count: Number of times the task has failed
        depends_on_task_id: Single predecessor
    """

    __tablename__ = "pipeline_tasks"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    pipeline_id = Column(
        UUID(), ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id = Column(UUID(), nullable=False, index=True)
    item_type = Column(String(50), nullable=False)
    task_type = Column(String(50), nullable=False, index=True)

    status = Column(String(50), nullable=False, default="pending", index=True)
    stage = Column(String(50), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    depends_on_task_id = Column(
        UUID(), ForeignKey("pipeline_tasks.id", ondelete="SET NULL"), nullable=True
    )
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_pipeline_tasks_pipeline_status", "pipeline_id", "status"),
    )


class ContentTask(Base):
    """
    Content-lifecycle task spawned by a pipeline's transform step.

    Tracks one draft through DRAFT -> CANDIDATE -> VALIDATED ->
    APPROVED / REJECTED. A pipeline only completes once all of its content
    tasks are APPROVED.
    """

    __tablename__ = "content_tasks"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    pipeline_id = Column(
        UUID(), ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id = Column(UUID(), nullable=False, unique=True)  # draft id
    item_type = Column(String(50), nullable=False, default="draft")
    data_type = Column(String(50), nullable=False)
    current_stage = Column(String(50), nullable=False, default="DRAFT", index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# CONTENT LIFECYCLE
# =============================================================================


class TransformationJob(Base):
    """
    Audit row for one content transformation attempt.

    Attributes:
        mapping_id: Confirmed topic mapping being transformed
        status: processing, completed, failed
        tokens_input / tokens_output / cost_usd / duration_ms: Model usage
        retry_count: Failed attempts for this mapping before this one
    """

    __tablename__ = "transformation_jobs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    mapping_id = Column(
        UUID(), ForeignKey("topic_mappings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document_id = Column(UUID(), nullable=True, index=True)
    chunk_id = Column(UUID(), nullable=True)
    topic_id = Column(UUID(), nullable=True)

    status = Column(String(50), nullable=False, default="processing", index=True)
    model = Column(String(100), nullable=True)
    prompt = Column(Text, nullable=True)
    raw_response = Column(Text, nullable=True)
    parsed_result = Column(JSON, nullable=True)

    tokens_input = Column(Integer, nullable=False, default=0)
    tokens_output = Column(Integer, nullable=False, default=0)
    cost_usd = Column(Float, nullable=False, default=0.0)
    duration_ms = Column(Integer, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)


class Draft(Base):
    """Raw content item produced by transformation."""

    __tablename__ = "drafts"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    data_type = Column(String(50), nullable=False, index=True)
    dedup_key = Column(String(500), nullable=True)
    data = Column(JSON, nullable=False, default=dict)
    source = Column(String(50), nullable=False, default="document_transform")

    document_id = Column(UUID(), nullable=True, index=True)
    chunk_id = Column(UUID(), nullable=True)
    topic_id = Column(UUID(), nullable=True)
    transformation_job_id = Column(
        UUID(), ForeignKey("transformation_jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_drafts_dedup", "topic_id", "data_type", "dedup_key"),
    )


class Candidate(Base):
    """Normalized draft awaiting quality gates."""

    __tablename__ = "candidates"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    draft_id = Column(
        UUID(), ForeignKey("drafts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    data_type = Column(String(50), nullable=False, index=True)
    dedup_key = Column(String(500), nullable=True)
    data = Column(JSON, nullable=False, default=dict)
    topic_id = Column(UUID(), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_candidates_dedup", "topic_id", "data_type", "dedup_key"),
    )


class ValidatedItem(Base):
    """Candidate that passed every quality gate; awaits human review."""

    __tablename__ = "validated_items"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    candidate_id = Column(
        UUID(), ForeignKey("candidates.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    data_type = Column(String(50), nullable=False, index=True)
    dedup_key = Column(String(500), nullable=True)
    data = Column(JSON, nullable=False, default=dict)
    topic_id = Column(UUID(), nullable=True)
    validation_results = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_validated_items_dedup", "topic_id", "data_type", "dedup_key"),
    )


class ApprovedItem(Base):
    """Validated item approved by a reviewer; leaves the pipeline core."""

    __tablename__ = "approved_items"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    validated_id = Column(
        UUID(), ForeignKey("validated_items.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    data_type = Column(String(50), nullable=False, index=True)
    data = Column(JSON, nullable=False, default=dict)
    topic_id = Column(UUID(), nullable=True)
    approved_by = Column(String(255), nullable=True)
    approved_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class RejectedItem(Base):
    """
    Validated item rejected by a reviewer.

    The ``(topic_id, data_type, dedup_key)`` tuple of a rejected item can
    never re-enter the lifecycle for that topic.
    """

    __tablename__ = "rejected_items"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    validated_id = Column(UUID(), nullable=True, unique=True)
    data_type = Column(String(50), nullable=False)
    dedup_key = Column(String(500), nullable=True)
    topic_id = Column(UUID(), nullable=True)
    reason = Column(Text, nullable=False)
    rejected_data = Column(JSON, nullable=False, default=dict)
    rejected_by = Column(String(255), nullable=True)
    rejected_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_rejected_items_dedup", "topic_id", "data_type", "dedup_key"),
    )


class ReviewQueueEntry(Base):
    """
    Validated item waiting for a human decision.

    Attributes:
        priority: rule=1 (highest) ... exercise=4, other=10
        reviewed_at: Null while pending
        decision: approve, reject
    """

    __tablename__ = "review_queue"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(UUID(), nullable=False, unique=True)  # validated item id
    data_type = Column(String(50), nullable=False)
    priority = Column(Integer, nullable=False, default=10, index=True)
    queued_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    reviewed_at = Column(DateTime, nullable=True)
    decision = Column(String(20), nullable=True)


class ValidationFailure(Base):
    """One failing quality gate for one candidate evaluation."""

    __tablename__ = "validation_failures"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    candidate_id = Column(
        UUID(), ForeignKey("candidates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    data_type = Column(String(50), nullable=False)
    gate_name = Column(String(100), nullable=False)
    failure_reason = Column(Text, nullable=False)
    score = Column(Float, nullable=True)
    failure_details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class LifecycleEvent(Base):
    """
    Append-only audit log of content lifecycle writes.

    Rows are inserted only. Updating or deleting an event through the ORM
    raises (see the mapper listeners below).
    """

    __tablename__ = "lifecycle_events"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(UUID(), nullable=False, index=True)
    item_type = Column(String(50), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    from_stage = Column(String(50), nullable=True)
    to_stage = Column(String(50), nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


@event.listens_for(LifecycleEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ValueError("Lifecycle events are append-only and cannot be updated")


@event.listens_for(LifecycleEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ValueError("Lifecycle events are append-only and cannot be deleted")


# =============================================================================
# WORKER STATE
# =============================================================================


class WorkItem(Base):
    """
    Entry of the external prioritized work queue.

    Attributes:
        work_type: Handler key (e.g. meaning, utterance, grammar)
        priority: 1 (critical) ... 4 (low)
        status: pending, processing, completed, failed
    """

    __tablename__ = "work_items"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    work_type = Column(String(50), nullable=False, index=True)
    priority = Column(Integer, nullable=False, default=3, index=True)
    status = Column(String(50), nullable=False, default="pending", index=True)
    payload = Column(JSON, nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class ServiceCheckpoint(Base):
    """Last unit of work completed by a named service (one row per service)."""

    __tablename__ = "service_checkpoints"

    service_name = Column(String(100), primary_key=True)
    last_processed_id = Column(String(255), nullable=True)
    last_processed_type = Column(String(50), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    state_metadata = Column("metadata", JSON, nullable=False, default=dict)


class ServiceError(Base):
    """Error checkpoint written when a worker tick raises."""

    __tablename__ = "service_errors"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    service_name = Column(String(100), nullable=False, index=True)
    error_type = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=False)
    stack_trace = Column(Text, nullable=True)
    error_metadata = Column("metadata", JSON, nullable=False, default=dict)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
