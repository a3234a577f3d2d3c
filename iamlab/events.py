"""
Event logging utilities for NDJSON format.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from .state import create_project_dir, get_project_dir


def emit_event(project_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Emit an event to the project's events.ndjson file.

    Args:
        project_id: Project ID
        event_type: Event type (e.g., "SETUP_START", "CREATED", "ERROR")
        data: Event data
    """
    project_dir = create_project_dir(project_id)
    events_file = project_dir / "events.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with open(events_file, "a") as f:
        f.write(json.dumps(event) + "\n")
        f.flush()  # Ensure immediate write


def read_events(project_id: str) -> list[Dict[str, Any]]:
    """
    Read all events from a project's events.ndjson file.

    Args:
        project_id: Project ID

    Returns:
        List of events
    """
    events_file = get_project_dir(project_id) / "events.ndjson"

    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def get_last_event(project_id: str) -> Optional[Dict[str, Any]]:
    events = read_events(project_id)
    return events[-1] if events else None


def get_status_from_events(project_id: str) -> str:
    """
    Determine lab status from events.

    Only setup and cleanup lifecycle events move the status. Per-step
    events and role grants are ignored.

    Args:
        project_id: Project ID

    Returns:
        Status string
    """
    status_map = {
        EventTypes.SETUP_START: "provisioning",
        EventTypes.SETUP_DONE: "ready",
        EventTypes.CLEANUP_START: "cleaning",
        EventTypes.CLEANUP_DONE: "cleaned",
        EventTypes.ERROR: "failed",
    }

    status = "unknown"
    for event in read_events(project_id):
        status = status_map.get(event.get("type", ""), status)

    return status


def tail_events(project_id: str, follow: bool = False, poll_interval: float = 0.1) -> Iterator[Dict[str, Any]]:
    """
    Generator that yields events, optionally waiting for new ones.

    Args:
        project_id: Project ID
        follow: If True, continue watching for new events

    Yields:
        Event dictionaries
    """
    events_file = get_project_dir(project_id) / "events.ndjson"

    if not events_file.exists():
        return

    with open(events_file, "r") as f:
        while True:
            line = f.readline()
            if line:
                line = line.strip()
                if line:
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        continue
                continue

            if not follow:
                return
            time.sleep(poll_interval)


# Predefined event types for consistency
class EventTypes:
    SETUP_START = "SETUP_START"
    SETUP_DONE = "SETUP_DONE"
    VARIABLES = "VARIABLES"
    STEP_START = "STEP_START"
    CREATED = "CREATED"
    SKIPPED = "SKIPPED"
    OBJECT_UPLOADED = "OBJECT_UPLOADED"
    BINDING_ADDED = "BINDING_ADDED"
    SCRIPT_WRITTEN = "SCRIPT_WRITTEN"
    ROLE_GRANTED = "ROLE_GRANTED"
    ROLE_GRANT_FAILED = "ROLE_GRANT_FAILED"
    CLEANUP_START = "CLEANUP_START"
    CLEANUP_DONE = "CLEANUP_DONE"
    DELETED = "DELETED"
    NOT_FOUND = "NOT_FOUND"
    BINDING_REMOVED = "BINDING_REMOVED"
    BINDING_REMOVE_FAILED = "BINDING_REMOVE_FAILED"
    FILE_REMOVED = "FILE_REMOVED"
    ERROR = "ERROR"
