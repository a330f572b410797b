"""
Tests for DocumentProcessor: extraction, chunking and failure cleanup.
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from refinery.database.models import Document, DocumentPage, DocumentProcessingLog
from refinery.errors import ExtractionFailureError, NotFoundError
from refinery.services.collaborators import ParagraphChunker, PlainTextExtractor
from refinery.services.document_processor import DocumentProcessor
from refinery.services.pipeline_service import PipelineService


@pytest.fixture
def processor(db, uploads_dir):
    return DocumentProcessor(
        extractor=PlainTextExtractor(base_dir=uploads_dir),
        chunker=ParagraphChunker(max_words=50, min_words=1),
        db=db,
    )


async def add_document(session, filename, language="ES"):
    document = Document(filename=filename, storage_path=filename, language=language)
    session.add(document)
    await session.commit()
    await session.refresh(document)
    return document


async def reload(session, document_id):
    result = await session.execute(
        select(Document).where(Document.id == document_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestExtractAndChunk:
    """Happy-path extraction and chunking."""

    @pytest.mark.asyncio
    async def test_extract_then_chunk(self, processor, session, uploads_dir):
        (uploads_dir / "unit1.txt").write_text(
            "Saludos.\n\nHola significa hello.\fDespedidas.\n\nAdiós significa goodbye.", encoding="utf-8"
        )
        document = await add_document(session, "unit1.txt")

        pages = await processor.extract_document(document.id)
        chunks = await processor.chunk_document(document.id)

        assert pages == 2
        assert chunks == 2
        refreshed = await reload(session, document.id)
        assert refreshed.status == "ready"
        assert refreshed.total_pages == 2
        assert await processor.count_chunks(session, document.id) == 2

        result = await session.execute(
            select(DocumentProcessingLog.step, DocumentProcessingLog.status)
            .where(DocumentProcessingLog.document_id == document.id)
            .order_by(DocumentProcessingLog.created_at.asc())
        )
        assert [tuple(row) for row in result.all()] == [("extract", "completed"), ("chunk", "completed")]

    @pytest.mark.asyncio
    async def test_process_document_single_transaction(self, processor, session, uploads_dir):
        (uploads_dir / "unit2.txt").write_text("Uno dos tres.\n\nCuatro cinco seis.", encoding="utf-8")
        document = await add_document(session, "unit2.txt")

        chunks = await processor.process_document(document.id)

        assert chunks == 1
        assert (await reload(session, document.id)).status == "ready"

    @pytest.mark.asyncio
    async def test_missing_document(self, processor):
        with pytest.raises(NotFoundError):
            await processor.extract_document(uuid4())


class TestFailureHandling:
    """A failing step leaves the document in error with no partial rows."""

    @pytest.mark.asyncio
    async def test_extraction_failure_marks_document_error(self, processor, session):
        document = await add_document(session, "missing.txt")

        with pytest.raises(ExtractionFailureError):
            await processor.extract_document(document.id)

        refreshed = await reload(session, document.id)
        assert refreshed.status == "error"
        assert "File not found" in refreshed.error_message

        result = await session.execute(
            select(func.count()).select_from(DocumentPage).where(DocumentPage.document_id == document.id)
        )
        assert result.scalar() == 0

        result = await session.execute(
            select(DocumentProcessingLog.status).where(DocumentProcessingLog.document_id == document.id)
        )
        assert result.scalars().all() == ["failed"]

    @pytest.mark.asyncio
    async def test_chunker_failure_rolls_back_chunks(self, db, session, uploads_dir):
        class BrokenChunker:
            def chunk(self, pages):
                raise RuntimeError("tokenizer crashed")

        (uploads_dir / "unit3.txt").write_text("Hola.", encoding="utf-8")
        document = await add_document(session, "unit3.txt")
        processor = DocumentProcessor(
            extractor=PlainTextExtractor(base_dir=uploads_dir), chunker=BrokenChunker(), db=db
        )

        with pytest.raises(RuntimeError):
            await processor.process_document(document.id)

        assert await processor.count_chunks(session, document.id) == 0
        refreshed = await reload(session, document.id)
        assert refreshed.status == "error"
        assert refreshed.error_message == "tokenizer crashed"


class TestPendingDocuments:
    """Documents that no pipeline drives are processed directly."""

    @pytest.mark.asyncio
    async def test_only_unmanaged_documents_are_processed(self, processor, session, uploads_dir):
        (uploads_dir / "free.txt").write_text("Libre y sin pipeline.", encoding="utf-8")
        (uploads_dir / "managed.txt").write_text("Con pipeline.", encoding="utf-8")
        free = await add_document(session, "free.txt")
        managed = await add_document(session, "managed.txt")
        await PipelineService().create_pipeline(session, managed.id)

        processed = await processor.process_pending_documents(5)

        assert processed == 1
        assert (await reload(session, free.id)).status == "ready"
        assert (await reload(session, managed.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_batch(self, processor, session, uploads_dir):
        (uploads_dir / "good.txt").write_text("Bueno.", encoding="utf-8")
        bad = await add_document(session, "bad.txt")
        good = await add_document(session, "good.txt")

        processed = await processor.process_pending_documents(5)

        assert processed == 1
        assert (await reload(session, bad.id)).status == "error"
        assert (await reload(session, good.id)).status == "ready"
