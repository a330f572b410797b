# refinery/services/collaborators.py
"""
Collaborator contracts for the pipeline orchestrator.

The orchestrator drives extraction, chunking, semantic mapping and content
transformation but does not implement the heuristics or model calls behind
them. Each collaborator is a Protocol; the worker is wired with concrete
implementations at start-up.

Defaults shipped here:
    - PlainTextExtractor: UTF-8 (or Latin-1) text files, form feed separates pages
    - ParagraphChunker: paragraph-aware chunking by word budget

Semantic mapping and content transformation are model-backed and have no
default; without a mapper pipelines complete after chunking. The worker
command loads them from the import paths in settings
(``load_semantic_mapper``, ``load_content_transformer``).
"""

import asyncio
import importlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable
from uuid import UUID

from ..config import settings
from ..errors import CollaboratorLoadError, ExtractionFailureError

logger = logging.getLogger("refinery.services.collaborators")


# =============================================================================
# DATA EXCHANGED WITH COLLABORATORS
# =============================================================================


@dataclass
class ExtractedPage:
    """Text of one extracted page."""
    page_number: int
    text: str


@dataclass
class ChunkData:
    """A chunk produced by the chunker."""
    chunk_index: int
    page_number: Optional[int]
    text: str
    chunk_type: str = "paragraph"
    confidence: Optional[float] = None

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def char_count(self) -> int:
        return len(self.text)


@dataclass
class TopicRef:
    """Curriculum topic offered to the semantic mapper."""
    id: UUID
    name: str
    content_type: str
    description: Optional[str] = None


@dataclass
class MappingProposal:
    """Mapper's suggestion that a chunk covers a topic."""
    topic_id: UUID
    confidence: float
    reasoning: Optional[str] = None


@dataclass
class TransformationRequest:
    """Input for one content transformation."""
    mapping_id: UUID
    chunk_text: str
    topic_name: str
    topic_type: str
    language: str
    level: str
    topic_description: Optional[str] = None


@dataclass
class TransformationOutput:
    """Items produced by a transformation plus model usage for the audit row."""
    data_type: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    model: Optional[str] = None
    prompt: Optional[str] = None
    raw_response: Optional[str] = None
    tokens_input: int = 0
    tokens_output: int = 0


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class TextExtractor(Protocol):
    async def extract(self, document) -> List[ExtractedPage]:
        """Extract pages from a Document row. Raises ExtractionFailureError."""
        ...


@runtime_checkable
class Chunker(Protocol):
    def chunk(self, pages: Sequence[ExtractedPage]) -> List[ChunkData]:
        ...


@runtime_checkable
class SemanticMapper(Protocol):
    async def map_chunk(self, chunk_text: str, topics: Sequence[TopicRef]) -> List[MappingProposal]:
        ...


@runtime_checkable
class ContentTransformer(Protocol):
    async def transform(self, request: TransformationRequest) -> TransformationOutput:
        ...


# =============================================================================
# DEFAULT IMPLEMENTATIONS
# =============================================================================


class PlainTextExtractor:
    """
    Extract text from plain-text documents.

    Pages are separated by form feed characters. Decoding tries UTF-8 first
    and falls back to Latin-1.
    """

    SUPPORTED_SUFFIXES = (".txt", ".text", ".md")
    ENCODINGS = ("utf-8", "latin-1")

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir

    def _resolve(self, storage_path: str) -> Path:
        path = Path(storage_path)
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path

    async def extract(self, document) -> List[ExtractedPage]:
        path = self._resolve(document.storage_path)
        if path.suffix.lower() not in self.SUPPORTED_SUFFIXES:
            raise ExtractionFailureError(f"Unsupported file type: {path.suffix or document.filename}")
        if not path.exists():
            raise ExtractionFailureError(f"File not found: {path}")

        raw = await asyncio.to_thread(path.read_bytes)

        text = None
        for encoding in self.ENCODINGS:
            try:
                text = raw.decode(encoding)
                logger.debug(f"Decoded {path.name} with {encoding}")
                break
            except UnicodeDecodeError:
                continue
        if text is None:
            raise ExtractionFailureError(f"Could not decode {path.name}")

        pages = [
            ExtractedPage(page_number=i + 1, text=page.strip())
            for i, page in enumerate(text.split("\f"))
        ]
        pages = [p for p in pages if p.text]
        if not pages:
            raise ExtractionFailureError(f"No text found in {path.name}")

        logger.info(f"Extracted {len(pages)} page(s) from {path.name}")
        return pages


class ParagraphChunker:
    """
    Paragraph-aware chunker.

    Paragraphs of a page are accumulated until the word budget is reached;
    a short heading line is carried into the chunk that follows it.
    Paragraphs longer than the budget are split at sentence boundaries.
    """

    HEADING_MAX_WORDS = 10

    def __init__(self, max_words: Optional[int] = None, min_words: Optional[int] = None):
        self.max_words = max_words or settings.chunk_max_words
        self.min_words = min_words if min_words is not None else settings.chunk_min_words

    @staticmethod
    def _split_into_paragraphs(text: str) -> List[str]:
        return [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]

    def _is_heading(self, paragraph: str) -> bool:
        return (
            "\n" not in paragraph
            and len(paragraph.split()) <= self.HEADING_MAX_WORDS
            and not paragraph.rstrip().endswith((".", "!", "?", ":", ";"))
        )

    def _split_large_paragraph(self, paragraph: str) -> List[str]:
        sentences = re.split(r"(?<=[.!?])\s+", paragraph)
        parts: List[str] = []
        current: List[str] = []
        count = 0
        for sentence in sentences:
            words = len(sentence.split())
            if current and count + words > self.max_words:
                parts.append(" ".join(current))
                current, count = [], 0
            current.append(sentence)
            count += words
        if current:
            parts.append(" ".join(current))
        return parts

    def chunk(self, pages: Sequence[ExtractedPage]) -> List[ChunkData]:
        chunks: List[ChunkData] = []

        def flush(parts: List[str], page_number: int) -> None:
            text = "\n\n".join(parts).strip()
            if len(text.split()) >= self.min_words:
                chunks.append(ChunkData(
                    chunk_index=len(chunks),
                    page_number=page_number,
                    text=text,
                    chunk_type="paragraph",
                    confidence=1.0,
                ))

        for page in pages:
            current: List[str] = []
            count = 0
            for paragraph in self._split_into_paragraphs(page.text):
                words = len(paragraph.split())

                if words > self.max_words:
                    if current:
                        flush(current, page.page_number)
                        current, count = [], 0
                    for part in self._split_large_paragraph(paragraph):
                        flush([part], page.page_number)
                    continue

                if current and count + words > self.max_words:
                    carried = [current.pop()] if self._is_heading(current[-1]) else []
                    if current:
                        flush(current, page.page_number)
                    current = carried
                    count = sum(len(p.split()) for p in carried)

                current.append(paragraph)
                count += words

            if current:
                flush(current, page.page_number)

        logger.info(f"Chunked {len(pages)} page(s) into {len(chunks)} chunk(s)")
        return chunks


# =============================================================================
# LOADING FROM SETTINGS
# =============================================================================


def load_collaborator(path: str) -> Any:
    """
    Import and build the collaborator named by ``path``.

    ``path`` is ``package.module:Name`` or ``package.module.Name``. A class
    is instantiated without arguments; any other attribute (an instance, a
    module-level singleton) is returned as is.

    Raises:
        CollaboratorLoadError: If the module or attribute cannot be found,
            or the class cannot be instantiated
    """
    module_name, sep, attr = path.strip().partition(":")
    if not sep:
        module_name, _, attr = module_name.rpartition(".")
    if not module_name or not attr:
        raise CollaboratorLoadError(f"Invalid collaborator path '{path}'")

    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise CollaboratorLoadError(f"Cannot import collaborator '{path}': {e}") from e

    if not isinstance(target, type):
        return target
    try:
        instance = target()
    except Exception as e:
        raise CollaboratorLoadError(f"Cannot instantiate collaborator '{path}': {e}") from e
    logger.info(f"Loaded collaborator {path}")
    return instance


def load_semantic_mapper() -> Optional[SemanticMapper]:
    if not settings.semantic_mapper_class:
        logger.warning("No semantic mapper configured; pipelines will stop after chunking")
        return None
    return load_collaborator(settings.semantic_mapper_class)


def load_content_transformer() -> Optional[ContentTransformer]:
    if not settings.content_transformer_class:
        logger.warning("No content transformer configured; transform tasks will fail")
        return None
    return load_collaborator(settings.content_transformer_class)
