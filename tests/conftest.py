import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

import pytest
import pytest_asyncio

# Configure settings before importing refinery modules: the module-level
# services build their engine from these at import time.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="refinery_pytest_"))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("UPLOADS_DIR", str(_SESSION_DIR / "uploads"))
os.environ.setdefault("SHUTDOWN_DRAIN_SECONDS", "0")

Path(_SESSION_DIR / "uploads").mkdir(parents=True, exist_ok=True)

from refinery.database.models import (  # noqa: E402
    CurriculumLevel,
    CurriculumTopic,
    Document,
    DocumentChunk,
    TopicMapping,
)
from refinery.services.database_service import DatabaseService  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


@pytest_asyncio.fixture
async def db(tmp_path):
    """File-backed SQLite database with all tables, one per test."""
    service = DatabaseService(database_url=f"sqlite+aiosqlite:///{tmp_path}/refinery.db")
    await service.init_db()
    yield service
    await service.close()


@pytest_asyncio.fixture
async def session(db):
    async with db.get_session() as session:
        yield session


@pytest.fixture
def uploads_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def document(session):
    """A pending document without a file behind it."""
    doc = Document(filename="unit1.txt", storage_path="unit1.txt", language="ES", target_level="A1")
    session.add(doc)
    await session.commit()
    await session.refresh(doc)
    return doc


@pytest_asyncio.fixture
async def curriculum(session):
    """Spanish A1 level with one vocabulary and one grammar topic."""
    level = CurriculumLevel(language="ES", cefr_level="A1", name="Spanish A1")
    session.add(level)
    await session.flush()

    vocabulary = CurriculumTopic(
        level_id=level.id, name="Greetings", content_type="vocabulary", sort_order=1
    )
    grammar = CurriculumTopic(
        level_id=level.id, name="Present tense of ser", content_type="grammar", sort_order=2
    )
    session.add_all([vocabulary, grammar])
    await session.commit()
    return {"level": level, "vocabulary": vocabulary, "grammar": grammar}


@pytest.fixture
def add_confirmed_mapping(session):
    """Factory: insert a chunk of a document and a confirmed mapping onto a topic."""

    async def _add(document_id, topic_id, text="Hola, buenos días.", chunk_index=0):
        chunk = DocumentChunk(
            document_id=document_id,
            chunk_index=chunk_index,
            page_number=1,
            text=text,
            word_count=len(text.split()),
            char_count=len(text),
        )
        session.add(chunk)
        await session.flush()

        mapping = TopicMapping(
            chunk_id=chunk.id,
            topic_id=topic_id,
            confidence=0.9,
            status="confirmed",
            confirmed_at=datetime.utcnow(),
        )
        session.add(mapping)
        await session.commit()
        return mapping

    return _add
