"""
Celery Task Modules

Background tasks for document imports:
- imports.py: Extraction service hand-off and cancel signals
"""

from docimport.tasks.imports import (
    dispatch_extraction,
    send_cancel_signal,
)

__all__ = [
    "dispatch_extraction",
    "send_cancel_signal",
]
