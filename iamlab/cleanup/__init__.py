"""
Discovery of lab resources for cleanup and status reporting.
"""

from .sweep import find_lab_buckets, list_lab_resources
from .models import FoundResource

__all__ = [
    "find_lab_buckets",
    "list_lab_resources",
    "FoundResource",
]
