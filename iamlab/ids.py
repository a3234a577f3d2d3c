"""
Run ID and bucket name generation utilities.
"""

import random
import re
import string
import time
from datetime import datetime
from typing import Optional

MAX_BUCKET_NAME_LENGTH = 63


def new_run_id() -> str:
    """
    Generate a new run ID in format: r-YYYYMMDD-hhmmss-XXXX

    Returns:
        str: Unique run ID
    """
    now = datetime.now()
    date_str = now.strftime("%Y%m%d")
    time_str = now.strftime("%H%M%S")

    # Generate 4 random alphanumeric characters
    random_suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=4))

    return f"r-{date_str}-{time_str}-{random_suffix}"


def new_bucket_name(project_id: str, marker: str, timestamp: Optional[int] = None) -> str:
    """
    Build a bucket name of the form <project>-<marker>-<unix seconds>.

    Args:
        project_id: Active project ID
        marker: Lab marker, e.g. "iam-lab"
        timestamp: Seconds since the epoch; defaults to now

    Returns:
        str: Bucket name

    Raises:
        ValueError: If the name would exceed the bucket name length limit
    """
    if timestamp is None:
        timestamp = int(time.time())

    # Domain-scoped project IDs ("example.com:proj") are not valid in bucket names
    prefix = project_id.lower().replace(":", "-")
    name = f"{prefix}-{marker}-{timestamp}"

    if len(name) > MAX_BUCKET_NAME_LENGTH:
        raise ValueError(
            f"Bucket name {name} is longer than {MAX_BUCKET_NAME_LENGTH} characters"
        )

    return name


def is_lab_bucket(name: str, project_id: str, marker: str) -> bool:
    """
    Check whether a bucket name is exactly one generated by new_bucket_name.

    Names that merely contain the marker do not qualify.
    """
    name = strip_bucket_url(name)
    prefix = project_id.lower().replace(":", "-")
    pattern = rf"^{re.escape(prefix)}-{re.escape(marker)}-\d+$"
    return re.match(pattern, name) is not None


def bucket_url(name: str) -> str:
    return f"gs://{strip_bucket_url(name)}"


def strip_bucket_url(value: str) -> str:
    """Turn "gs://name/" into "name"."""
    if value.startswith("gs://"):
        value = value[len("gs://"):]
    return value.rstrip("/")
