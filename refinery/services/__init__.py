# refinery/services/__init__.py
"""Services package for Refinery."""
