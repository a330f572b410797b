# refinery/commands/__init__.py
"""Command-line entry points for the refinement service."""
