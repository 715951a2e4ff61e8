"""
Voice listing pipeline.

Turns a dictated voice note into a structured classified-ad listing:
transcribe, extract fields, persist an entry and email it once.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]
