"""
Lab settings and resolved run context.
"""

import os
import re
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

SERVICE_ACCOUNT_ID = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")
LABEL_VALUE = re.compile(r"^[a-z0-9_-]{1,63}$")


class LabSettings(BaseModel):
    """Fixed names and options used by the lab. Defaults match the tutorial."""

    model_config = ConfigDict(extra="forbid")

    # Service account
    service_account_name: str = "read-bucket-objects"
    service_account_display_name: str = "Read Bucket Objects"
    service_account_description: str = "Service account for reading bucket objects"

    # Compute instance
    vm_name: str = "demoiam"
    machine_type: str = "e2-micro"
    image_family: str = "debian-12"
    image_project: str = "debian-cloud"
    scopes: List[str] = Field(default_factory=lambda: ["storage-rw", "compute-ro"])
    network_tag: str = "iam-lab"
    default_zone: str = "us-central1-a"

    # Storage
    bucket_location: str = "us"
    storage_class: str = "STANDARD"
    bucket_marker: str = "iam-lab"
    sample_object: str = "sample.txt"
    sample_body: str = "This is a sample file for IAM testing"
    renamed_object: str = "sample2.txt"

    # Roles and members
    viewer_role: str = "roles/storage.objectViewer"
    creator_role: str = "roles/storage.objectCreator"
    domain: str = "altostrat.com"
    domain_service_account_role: str = "roles/iam.serviceAccountUser"
    domain_project_role: str = "roles/compute.instanceAdmin.v1"

    # Local artifacts
    test_script_name: str = "test_permissions.sh"

    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("service_account_name")
    @classmethod
    def _check_service_account_name(cls, value: str) -> str:
        if not SERVICE_ACCOUNT_ID.match(value):
            raise ValueError(
                "service account name must be 6-30 characters of lowercase letters, "
                "digits and hyphens, starting with a letter"
            )
        return value

    @field_validator(
        "viewer_role", "creator_role", "domain_service_account_role", "domain_project_role"
    )
    @classmethod
    def _check_role(cls, value: str) -> str:
        if not value.startswith("roles/"):
            raise ValueError(f"role must start with 'roles/': {value}")
        return value

    @field_validator("bucket_marker")
    @classmethod
    def _check_marker(cls, value: str) -> str:
        if not LABEL_VALUE.match(value):
            raise ValueError(f"bucket marker must be a valid label value: {value}")
        return value

    @field_validator("scopes")
    @classmethod
    def _check_scopes(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one access scope is required")
        return value

    @property
    def domain_member(self) -> str:
        return f"domain:{self.domain}"

    @property
    def local_files(self) -> List[str]:
        """Files the lab may leave in the working directory."""
        return [self.test_script_name, self.sample_object, self.renamed_object]


def load_settings(path: Optional[str] = None) -> LabSettings:
    """
    Load lab settings from a YAML file.

    Args:
        path: Settings file; falls back to IAMLAB_CONFIG, then to defaults

    Returns:
        LabSettings

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        ValueError: If the file is malformed or a value is invalid
    """
    path = path or os.environ.get("IAMLAB_CONFIG")
    if not path:
        return LabSettings()

    settings_file = Path(path)
    if not settings_file.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_file}")

    with open(settings_file, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {settings_file}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {settings_file} must contain a mapping")

    return LabSettings.model_validate(data)


def service_account_email(name: str, project_id: str) -> str:
    return f"{name}@{project_id}.iam.gserviceaccount.com"


@dataclass
class LabContext:
    """Identifiers resolved at the start of a run and shared by later steps."""
    project_id: str
    zone: str
    service_account_email: str
    run_id: str
    bucket_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
