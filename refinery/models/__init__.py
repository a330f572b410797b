# refinery/models/__init__.py
"""Pydantic models shared by the Refinery services."""
