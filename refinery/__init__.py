# refinery/__init__.py
"""Refinery - textbook ingestion and content refinement pipeline."""

__version__ = "2.0.0"
__title__ = "Refinery"
__description__ = "Turn uploaded textbooks into reviewed, structured learning items"
