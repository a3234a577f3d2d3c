"""
Labeling utilities for consistent resource labels across lab runs.
"""

import re
from typing import Dict, Optional

LABEL_KEY = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")
LABEL_VALUE = re.compile(r"^[a-z0-9_-]{0,63}$")


def base_labels(run_id: str, marker: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base labels for a lab run.

    Args:
        run_id: Run ID
        marker: Lab marker, stored as the value of the "lab" label
        extra: Additional labels to include

    Returns:
        Dictionary of labels to apply to buckets and instances
    """
    labels = {
        "lab": marker,
        "managed_by": "iamlab",
        "run_id": run_id,
    }

    # Add extra labels if provided
    if extra:
        labels.update(extra)

    return labels


def parse_user_labels(label_strings: list[str]) -> Dict[str, str]:
    """
    Parse user-provided label strings in format "key=value".

    Args:
        label_strings: List of label strings in "key=value" format

    Returns:
        Dictionary of parsed labels

    Raises:
        ValueError: If a label string is malformed or not a valid GCP label
    """
    labels = {}

    for label_str in label_strings:
        if "=" not in label_str:
            raise ValueError(f"Invalid label format: {label_str}. Expected 'key=value'")

        key, value = label_str.split("=", 1)
        key, value = key.strip(), value.strip()
        if not key:
            raise ValueError(f"Invalid label format: {label_str}. Key must not be empty")

        if not LABEL_KEY.match(key):
            raise ValueError(
                f"Invalid label key: {key}. Use lowercase letters, digits, '_' or '-', "
                "starting with a letter"
            )
        if not LABEL_VALUE.match(value):
            raise ValueError(
                f"Invalid label value: {value}. Use lowercase letters, digits, '_' or '-'"
            )

        labels[key] = value

    return labels


def format_labels(labels: Dict[str, str]) -> str:
    """Render labels as the comma separated list gcloud flags expect."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def is_lab_resource(labels: Optional[Dict[str, str]], marker: str) -> bool:
    """
    Check if a resource belongs to the lab based on its labels.

    Args:
        labels: Resource labels (may be None)
        marker: Lab marker

    Returns:
        True if the resource carries lab=<marker>
    """
    if not labels:
        return False
    return labels.get("lab") == marker
