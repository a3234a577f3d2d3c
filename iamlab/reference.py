"""
Reference table of example policies and role definitions.

The table documents what the lab grants. Provisioning does not read it;
it backs the `iamlab roles` command and the role titles used in messages.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

REFERENCE_FILE = Path(__file__).parent / "data" / "iam_reference.json"


@lru_cache(maxsize=None)
def load_reference(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the reference table.

    Args:
        path: Alternate JSON file; defaults to the packaged table

    Returns:
        Dict with "policies" (list) and "roles" (role -> definition)
    """
    reference_file = Path(path) if path else REFERENCE_FILE
    with open(reference_file, "r") as f:
        data = json.load(f)

    data.setdefault("policies", [])
    data.setdefault("roles", {})
    return data


def list_roles() -> List[str]:
    return sorted(load_reference()["roles"])


def permissions_for(role: str) -> List[str]:
    """
    Permissions granted by a role.

    Raises:
        KeyError: If the role isn't in the table
    """
    roles = load_reference()["roles"]
    if role not in roles:
        raise KeyError(f"Unknown role: {role}")
    return list(roles[role].get("permissions", []))


def roles_granting(permission: str) -> List[str]:
    """Roles in the table whose permissions include the given one."""
    return sorted(
        role for role, definition in load_reference()["roles"].items()
        if permission in definition.get("permissions", [])
    )


def role_title(role: str) -> str:
    """
    Human readable title of a role.

    Falls back to deriving one from the role name when the role isn't in
    the table, e.g. roles/storage.objectCreator -> "Storage Object Creator".
    """
    definition = load_reference()["roles"].get(role)
    if definition and definition.get("title"):
        return definition["title"]

    name = role.split("/", 1)[-1]
    words = []
    for part in name.split("."):
        word = ""
        for ch in part:
            if ch.isupper() and word:
                words.append(word)
                word = ch
            else:
                word += ch
        if word:
            words.append(word)
    return " ".join(w[:1].upper() + w[1:] for w in words)


def get_policy(name: str) -> Dict[str, Any]:
    for entry in load_reference()["policies"]:
        if entry.get("name") == name:
            return entry
    raise KeyError(f"Unknown policy: {name}")
