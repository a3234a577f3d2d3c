"""
Data models for cleanup and resource discovery.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class FoundResource:
    """Represents a lab resource found in the project."""
    kind: str  # "bucket", "instance", "service_account"
    identifier: str
    labels: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None  # Why we think it belongs to the lab
    zone: Optional[str] = None
