# refinery/services/document_processor.py
"""
Document processing - extraction and chunking of uploaded documents.

Every step runs in its own transaction. When a step fails:

1. The transaction is rolled back (no partial pages or chunks survive).
2. A best-effort cleanup deletes any chunks of the document in a fresh
   session.
3. The document is set to ``error`` in another fresh session, so the
   failure is visible even though the step's own writes were discarded.

``process_document`` runs extraction and chunking together in a single
transaction; it serves documents that are not driven by a pipeline.

Usage:
    from refinery.services.document_processor import DocumentProcessor

    processor = DocumentProcessor(extractor=PlainTextExtractor(), chunker=ParagraphChunker())
    pages = await processor.extract_document(document_id)
    chunks = await processor.chunk_document(document_id)
"""

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import (
    Document,
    DocumentChunk,
    DocumentPage,
    DocumentProcessingLog,
    Pipeline,
)
from ..errors import ExtractionFailureError, NotFoundError
from .collaborators import Chunker, ExtractedPage, ParagraphChunker, PlainTextExtractor, TextExtractor
from .database_service import DatabaseService, database_service

logger = logging.getLogger("refinery.services.document_processor")


class DocumentProcessor:
    """
    Runs extraction and chunking against the document tables.

    Attributes:
        extractor: Text extraction collaborator
        chunker: Chunking collaborator
        db: Database service used to open step transactions
    """

    def __init__(
        self,
        extractor: Optional[TextExtractor] = None,
        chunker: Optional[Chunker] = None,
        db: Optional[DatabaseService] = None,
    ):
        self.extractor = extractor or PlainTextExtractor(base_dir=settings.uploads_path)
        self.chunker = chunker or ParagraphChunker()
        self.db = db or database_service

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    async def extract_document(self, document_id: UUID) -> int:
        """
        Extract a document's pages.

        Returns:
            Number of pages stored

        Raises:
            NotFoundError: If the document does not exist
            ExtractionFailureError: If the file cannot be extracted
        """
        return await self._run_step(document_id, "extract", self._extract)

    async def chunk_document(self, document_id: UUID) -> int:
        """
        Chunk a document's extracted pages and mark it ``ready``.

        Returns:
            Number of chunks stored
        """
        return await self._run_step(document_id, "chunk", self._chunk)

    async def process_document(self, document_id: UUID) -> int:
        """
        Extract and chunk a document inside one transaction.

        Returns:
            Number of chunks stored
        """
        async def extract_then_chunk(session: AsyncSession, document: Document) -> int:
            await self._extract(session, document)
            await session.flush()
            return await self._chunk(session, document)

        return await self._run_step(document_id, "process", extract_then_chunk)

    async def process_pending_documents(self, limit: Optional[int] = None) -> int:
        """
        Process pending documents that no pipeline is driving.

        Failures are recorded on the document and do not stop the batch.

        Returns:
            Number of documents processed successfully
        """
        limit = limit or settings.pending_document_batch_size

        async with self.db.get_session() as session:
            document_ids = await self.get_unmanaged_pending_document_ids(session, limit)

        processed = 0
        for document_id in document_ids:
            try:
                await self.process_document(document_id)
                processed += 1
            except Exception as e:
                logger.error(f"Document {document_id} failed processing: {e}")

        if processed:
            logger.info(f"Processed {processed} pending document(s)")
        return processed

    async def get_unmanaged_pending_document_ids(
        self, session: AsyncSession, limit: int
    ) -> List[UUID]:
        """Pending documents without a pipeline, oldest first."""
        has_pipeline = exists().where(Pipeline.document_id == Document.id)
        result = await session.execute(
            select(Document.id)
            .where(Document.status == "pending", ~has_pipeline)
            .order_by(Document.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_chunks(self, session: AsyncSession, document_id: UUID) -> int:
        result = await session.execute(
            select(func.count()).select_from(DocumentChunk).where(DocumentChunk.document_id == document_id)
        )
        return result.scalar() or 0

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _extract(self, session: AsyncSession, document: Document) -> int:
        pages = await self.extractor.extract(document)
        if not pages:
            raise ExtractionFailureError(f"No pages extracted from {document.filename}")

        await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document.id))
        await session.execute(delete(DocumentPage).where(DocumentPage.document_id == document.id))
        session.add_all(
            DocumentPage(document_id=document.id, page_number=page.page_number, text=page.text)
            for page in pages
        )
        document.total_pages = len(pages)
        document.error_message = None
        return len(pages)

    async def _chunk(self, session: AsyncSession, document: Document) -> int:
        result = await session.execute(
            select(DocumentPage)
            .where(DocumentPage.document_id == document.id)
            .order_by(DocumentPage.page_number.asc())
        )
        pages = [ExtractedPage(page_number=p.page_number, text=p.text) for p in result.scalars().all()]
        if not pages:
            raise ExtractionFailureError(f"Document {document.id} has no extracted pages")

        chunks = self.chunker.chunk(pages)

        await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document.id))
        session.add_all(
            DocumentChunk(
                document_id=document.id,
                chunk_index=chunk.chunk_index,
                page_number=chunk.page_number,
                text=chunk.text,
                chunk_type=chunk.chunk_type,
                confidence=chunk.confidence,
                word_count=chunk.word_count,
                char_count=chunk.char_count,
            )
            for chunk in chunks
        )
        document.status = "ready"
        document.error_message = None
        return len(chunks)

    # =========================================================================
    # TRANSACTION HANDLING
    # =========================================================================

    async def _run_step(
        self,
        document_id: UUID,
        step: str,
        work: Callable[[AsyncSession, Document], Awaitable[Any]],
    ) -> Any:
        start = time.monotonic()
        try:
            async with self.db.get_session() as session:
                document = await session.get(Document, document_id)
                if not document:
                    raise NotFoundError("Document", document_id)
                result = await work(session, document)
                session.add(DocumentProcessingLog(
                    document_id=document_id,
                    step=step,
                    status="completed",
                    message=f"{step} produced {result}",
                    duration_ms=int((time.monotonic() - start) * 1000),
                ))
            logger.info(f"Document {document_id} {step} completed ({result})")
            return result
        except NotFoundError:
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.error(f"Document {document_id} {step} failed: {e}")
            await self._cleanup_chunks(document_id)
            await self._mark_error(document_id, step, str(e), duration_ms)
            raise

    async def _cleanup_chunks(self, document_id: UUID) -> None:
        try:
            async with self.db.get_session() as session:
                await session.execute(
                    delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
                )
        except Exception as e:
            logger.warning(f"Chunk cleanup for document {document_id} failed: {e}")

    async def _mark_error(
        self, document_id: UUID, step: str, message: str, duration_ms: int
    ) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(status="error", error_message=message, updated_at=datetime.utcnow())
            )
            session.add(DocumentProcessingLog(
                document_id=document_id,
                step=step,
                status="failed",
                message=message,
                duration_ms=duration_ms,
            ))
