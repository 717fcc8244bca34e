"""Utility modules for PrintStreamer"""

from .files import atomic_write_json, sanitize_filename, session_name_for_job
from .logging_setup import mask_secret, parse_size, setup_logging

__all__ = [
    "atomic_write_json",
    "sanitize_filename",
    "session_name_for_job",
    "mask_secret",
    "parse_size",
    "setup_logging",
]
