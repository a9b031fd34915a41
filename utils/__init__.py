"""Utility modules for the EVS balance bot."""

from .log_sanitizer import sanitize_log, sanitize_for_log, mask_secret

__all__ = ["sanitize_log", "sanitize_for_log", "mask_secret"]
