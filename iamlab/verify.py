"""
Permission checks for the lab service account.

Two forms of the same four checks are provided: a shell script written to
the working directory (meant to be copied onto the lab VM) and an
in-process runner that executes the checks through gcloud.
"""

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import LabSettings
from .gcloud import GCloud
from .ids import bucket_url
from .reference import role_title
from .resources import list_instances

logger = logging.getLogger(__name__)

CHECK_LIST = "list_instances"
CHECK_DOWNLOAD = "download"
CHECK_RENAME = "rename"
CHECK_UPLOAD = "upload"
ALL_CHECKS = [CHECK_LIST, CHECK_DOWNLOAD, CHECK_RENAME, CHECK_UPLOAD]


TEST_SCRIPT_TEMPLATE = """#!/bin/bash
# Test script for verifying IAM permissions

echo "Testing IAM permissions..."
echo "Bucket name: {{BUCKET_NAME}}"
echo "=========================="

# Test 1: List compute instances (should fail initially)
echo "Test 1: Listing compute instances"
if gcloud compute instances list; then
    echo "✓ Can list compute instances"
else
    echo "✗ Cannot list compute instances (expected for service account)"
fi

echo ""

# Test 2: Download file from bucket (should succeed)
echo "Test 2: Downloading file from bucket"
if gcloud storage cp {{BUCKET_URL}}/{{SAMPLE_OBJECT}} .; then
    echo "✓ Successfully downloaded {{SAMPLE_OBJECT}}"
else
    echo "✗ Failed to download {{SAMPLE_OBJECT}}"
    exit 1
fi

# Test 3: Rename file
echo "Test 3: Renaming file"
if mv {{SAMPLE_OBJECT}} {{RENAMED_OBJECT}}; then
    echo "✓ Successfully renamed file"
else
    echo "✗ Failed to rename file"
    exit 1
fi

# Test 4: Upload file to bucket (may fail initially)
echo "Test 4: Uploading file to bucket"
if gcloud storage cp {{RENAMED_OBJECT}} {{BUCKET_URL}}/; then
    echo "✓ Successfully uploaded {{RENAMED_OBJECT}}"
else
    echo "✗ Failed to upload {{RENAMED_OBJECT}} (check if {{CREATOR_ROLE_TITLE}} role is assigned)"
fi

echo ""
echo "Test completed!"
"""


def render_test_script(bucket_name: str, settings: LabSettings) -> str:
    """
    Fill the test script template for a bucket.

    Args:
        bucket_name: Lab bucket name (without gs://)
        settings: Lab settings providing object names and roles

    Returns:
        Script body
    """
    replacements = {
        "{{BUCKET_NAME}}": bucket_name,
        "{{BUCKET_URL}}": bucket_url(bucket_name),
        "{{SAMPLE_OBJECT}}": settings.sample_object,
        "{{RENAMED_OBJECT}}": settings.renamed_object,
        "{{CREATOR_ROLE_TITLE}}": role_title(settings.creator_role),
    }

    script = TEST_SCRIPT_TEMPLATE
    for placeholder, value in replacements.items():
        script = script.replace(placeholder, value)
    return script


def write_test_script(bucket_name: str, settings: LabSettings, directory: Path) -> Path:
    """Write the test script into directory and make it executable."""
    script_path = Path(directory) / settings.test_script_name

    with open(script_path, "w") as f:
        f.write(render_test_script(bucket_name, settings))

    mode = script_path.stat().st_mode
    script_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script_path


@dataclass
class CheckResult:
    """Outcome of one permission check."""
    name: str
    passed: bool
    expected: bool  # whether the lab expects this check to pass out of the box
    detail: str = ""

    @property
    def marker(self) -> str:
        return "✓" if self.passed else "✗"


def run_checks(
    gcloud: GCloud,
    bucket_name: str,
    settings: Optional[LabSettings] = None,
    workdir: Optional[Path] = None,
    only: Optional[str] = None,
) -> List[CheckResult]:
    """
    Run the permission checks with the active gcloud identity.

    Args:
        gcloud: gcloud client
        bucket_name: Lab bucket
        settings: Lab settings
        workdir: Where the sample object is downloaded and renamed
        only: Run a single check by name

    Returns:
        One CheckResult per check that ran. A failed download or rename
        stops the sequence.
    """
    settings = settings or LabSettings()
    workdir = Path(workdir) if workdir else Path.cwd()

    if only is not None and only not in ALL_CHECKS:
        raise ValueError(f"Unknown check: {only}. Choose from {', '.join(ALL_CHECKS)}")

    sample_path = workdir / settings.sample_object
    renamed_path = workdir / settings.renamed_object
    results: List[CheckResult] = []

    def wanted(name: str) -> bool:
        return only is None or only == name

    if wanted(CHECK_LIST):
        names = list_instances(gcloud)
        if names is None:
            results.append(CheckResult(CHECK_LIST, False, False,
                                       "Cannot list compute instances (expected for service account)"))
        else:
            results.append(CheckResult(CHECK_LIST, True, False,
                                       f"Can list compute instances ({len(names)} visible)"))

    if wanted(CHECK_DOWNLOAD):
        source = f"{bucket_url(bucket_name)}/{settings.sample_object}"
        result = gcloud.run(["storage", "cp", source, str(sample_path)], check=False)
        if not result.ok:
            results.append(CheckResult(CHECK_DOWNLOAD, False, True,
                                       f"Failed to download {settings.sample_object}"))
            return results
        results.append(CheckResult(CHECK_DOWNLOAD, True, True,
                                   f"Successfully downloaded {settings.sample_object}"))

    if wanted(CHECK_RENAME):
        try:
            os.replace(sample_path, renamed_path)
        except OSError as e:
            results.append(CheckResult(CHECK_RENAME, False, True, f"Failed to rename file: {e}"))
            return results
        results.append(CheckResult(CHECK_RENAME, True, True, "Successfully renamed file"))

    if wanted(CHECK_UPLOAD):
        if not renamed_path.exists():
            # Re-running the upload alone needs a local file to send
            with open(renamed_path, "w") as f:
                f.write(settings.sample_body + "\n")

        result = gcloud.run(["storage", "cp", str(renamed_path), bucket_url(bucket_name) + "/"], check=False)
        if result.ok:
            results.append(CheckResult(CHECK_UPLOAD, True, False,
                                       f"Successfully uploaded {settings.renamed_object}"))
        else:
            results.append(CheckResult(CHECK_UPLOAD, False, False,
                                       f"Failed to upload {settings.renamed_object} "
                                       f"(check if {role_title(settings.creator_role)} role is assigned)"))

    for check in results:
        logger.debug("Check %s passed=%s", check.name, check.passed)

    return results
