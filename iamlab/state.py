"""
State management for lab runs.

Each project gets a directory under the lab home holding state.json (the
exact names of everything provisioning created) and events.ndjson.
"""

import json
import os
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ID = re.compile(r"^[a-z][a-z0-9.:-]{4,61}[a-z0-9]$")


def get_lab_home() -> Path:
    """
    Get the lab home directory.

    Returns:
        Path: Lab home directory
    """
    lab_home = os.environ.get("IAMLAB_HOME", ".iamlab")
    return Path(lab_home).resolve()


def is_valid_project_id(project_id: str) -> bool:
    return bool(project_id) and PROJECT_ID.match(project_id) is not None


def get_project_dir(project_id: str) -> Path:
    """
    Get the state directory for a specific project.

    Args:
        project_id: Project ID

    Returns:
        Path: Project directory

    Raises:
        ValueError: If project ID is invalid
    """
    if not is_valid_project_id(project_id):
        raise ValueError(f"Invalid project ID: {project_id}")

    return get_lab_home() / project_id


def create_project_dir(project_id: str) -> Path:
    project_dir = get_project_dir(project_id)
    project_dir.mkdir(parents=True, exist_ok=True)
    return project_dir


@dataclass
class LabState:
    """Exact identifiers of the resources a lab run created."""
    project_id: str
    run_id: str
    zone: str = ""
    buckets: List[str] = field(default_factory=list)
    service_account_email: Optional[str] = None
    instance: Optional[Dict[str, str]] = None
    bindings: List[Dict[str, str]] = field(default_factory=list)
    local_files: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: Optional[str] = None

    @property
    def current_bucket(self) -> Optional[str]:
        return self.buckets[-1] if self.buckets else None

    def add_bucket(self, name: str) -> None:
        if name not in self.buckets:
            self.buckets.append(name)

    def remove_bucket(self, name: str) -> None:
        if name in self.buckets:
            self.buckets.remove(name)

    def add_binding(self, binding: Dict[str, str]) -> None:
        if binding not in self.bindings:
            self.bindings.append(binding)

    def remove_binding(self, binding: Dict[str, str]) -> None:
        if binding in self.bindings:
            self.bindings.remove(binding)

    def add_local_file(self, path: str) -> None:
        if path not in self.local_files:
            self.local_files.append(path)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LabState":
        return cls(
            project_id=data["project_id"],
            run_id=data.get("run_id", ""),
            zone=data.get("zone", ""),
            buckets=list(data.get("buckets", [])),
            service_account_email=data.get("service_account_email"),
            instance=data.get("instance"),
            bindings=list(data.get("bindings", [])),
            local_files=list(data.get("local_files", [])),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at"),
        )


def read_state(project_id: str) -> Optional[LabState]:
    """
    Read the recorded state for a project.

    Args:
        project_id: Project ID

    Returns:
        LabState, or None if nothing was recorded
    """
    state_file = get_project_dir(project_id) / "state.json"

    if not state_file.exists():
        return None

    with open(state_file, "r") as f:
        return LabState.from_dict(json.load(f))


def write_state(state: LabState) -> None:
    """
    Write state.json for the state's project, creating the directory.

    Args:
        state: State to persist
    """
    project_dir = create_project_dir(state.project_id)
    state.updated_at = datetime.now().isoformat()

    tmp_file = project_dir / "state.json.tmp"
    with open(tmp_file, "w") as f:
        json.dump(state.to_dict(), f, indent=2)
    os.replace(tmp_file, project_dir / "state.json")


def clear_state(project_id: str) -> None:
    """Remove state.json, keeping the event log."""
    state_file = get_project_dir(project_id) / "state.json"

    if state_file.exists():
        state_file.unlink()
