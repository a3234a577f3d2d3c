"""
gcloud wrappers for the resources the lab manages.

Each function is a single pass-through call (or a describe used as an
existence predicate). Sequencing lives in provision.py and decommission.py.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

from .gcloud import GCloud
from .ids import bucket_url, strip_bucket_url
from .labels import format_labels

PROJECT = "project"
SERVICE_ACCOUNT = "service_account"


@dataclass(frozen=True)
class Binding:
    """A (resource, role, member) policy binding."""
    resource_kind: str  # PROJECT or SERVICE_ACCOUNT
    resource_id: str
    role: str
    member: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Binding":
        return cls(
            resource_kind=data["resource_kind"],
            resource_id=data["resource_id"],
            role=data["role"],
            member=data["member"],
        )

    def describe(self) -> str:
        return f"{self.role} for {self.member} on {self.resource_kind} {self.resource_id}"


# gcloud configuration

def active_account(gcloud: GCloud) -> str:
    return gcloud.value(["auth", "list", "--filter=status:ACTIVE", "--format=value(account)"])


def config_value(gcloud: GCloud, key: str) -> str:
    return gcloud.value(["config", "get-value", key])


def set_config_value(gcloud: GCloud, key: str, value: str) -> None:
    gcloud.run(["config", "set", key, value])


# Cloud Storage

def bucket_exists(gcloud: GCloud, name: str) -> bool:
    return gcloud.succeeds(["storage", "buckets", "describe", bucket_url(name), "--format=value(name)"])


def create_bucket(gcloud: GCloud, name: str, location: str, storage_class: str) -> None:
    gcloud.run([
        "storage", "buckets", "create", bucket_url(name),
        f"--location={location}",
        f"--default-storage-class={storage_class}",
    ])


def label_bucket(gcloud: GCloud, name: str, labels: Dict[str, str]) -> None:
    gcloud.run([
        "storage", "buckets", "update", bucket_url(name),
        f"--update-labels={format_labels(labels)}",
    ])


def upload_file(gcloud: GCloud, local_path: str, bucket: str) -> None:
    gcloud.run(["storage", "cp", local_path, bucket_url(bucket) + "/"])


def list_buckets(gcloud: GCloud, project_id: str) -> List[Dict[str, Any]]:
    """
    List buckets visible in the project.

    Returns:
        List of {"name": str, "labels": dict}
    """
    raw = gcloud.json(["storage", "buckets", "list", f"--project={project_id}"]) or []

    buckets = []
    for item in raw:
        name = item.get("name") or strip_bucket_url(item.get("storage_url", ""))
        if not name:
            continue
        buckets.append({"name": name, "labels": _normalize_labels(item.get("labels"))})

    return buckets


def _normalize_labels(labels: Any) -> Dict[str, str]:
    if not labels:
        return {}
    if isinstance(labels, dict):
        return {str(k): str(v) for k, v in labels.items()}
    # Older releases render labels as a list of {"key": ..., "value": ...}
    return {item["key"]: item.get("value", "") for item in labels if "key" in item}


def delete_bucket(gcloud: GCloud, name: str) -> None:
    """Delete a bucket together with every object in it."""
    gcloud.run(["storage", "rm", "--recursive", bucket_url(name)])


# Service accounts

def service_account_exists(gcloud: GCloud, email: str) -> bool:
    return gcloud.succeeds(["iam", "service-accounts", "describe", email, "--format=value(email)"])


def create_service_account(gcloud: GCloud, name: str, display_name: str, description: str) -> None:
    gcloud.run([
        "iam", "service-accounts", "create", name,
        f"--display-name={display_name}",
        f"--description={description}",
    ])


def delete_service_account(gcloud: GCloud, email: str) -> None:
    gcloud.run(["iam", "service-accounts", "delete", email, "--quiet"])


# Compute Engine

def instance_exists(gcloud: GCloud, name: str, zone: str) -> bool:
    return gcloud.succeeds(["compute", "instances", "describe", name, f"--zone={zone}", "--format=value(name)"])


def create_instance(
    gcloud: GCloud,
    name: str,
    zone: str,
    machine_type: str,
    image_family: str,
    image_project: str,
    service_account: str,
    scopes: Sequence[str],
    tags: Sequence[str],
    labels: Dict[str, str],
) -> None:
    args = [
        "compute", "instances", "create", name,
        f"--zone={zone}",
        f"--machine-type={machine_type}",
        f"--image-family={image_family}",
        f"--image-project={image_project}",
        f"--service-account={service_account}",
        f"--scopes={','.join(scopes)}",
        f"--tags={','.join(tags)}",
    ]
    if labels:
        args.append(f"--labels={format_labels(labels)}")
    gcloud.run(args)


def delete_instance(gcloud: GCloud, name: str, zone: str) -> None:
    gcloud.run(["compute", "instances", "delete", name, f"--zone={zone}", "--quiet"])


# IAM policy bindings

def _policy_command(binding: Binding) -> List[str]:
    if binding.resource_kind == PROJECT:
        return ["projects"]
    if binding.resource_kind == SERVICE_ACCOUNT:
        return ["iam", "service-accounts"]
    raise ValueError(f"Unsupported resource kind: {binding.resource_kind}")


def get_iam_policy(gcloud: GCloud, resource_kind: str, resource_id: str) -> Dict[str, Any]:
    probe = Binding(resource_kind, resource_id, "", "")
    return gcloud.json(_policy_command(probe) + ["get-iam-policy", resource_id]) or {}


def policy_has_binding(policy: Dict[str, Any], role: str, member: str) -> bool:
    for entry in policy.get("bindings", []):
        # Conditional bindings are not managed by the lab
        if entry.get("condition"):
            continue
        if entry.get("role") == role and member in entry.get("members", []):
            return True
    return False


def binding_present(gcloud: GCloud, binding: Binding) -> bool:
    policy = get_iam_policy(gcloud, binding.resource_kind, binding.resource_id)
    return policy_has_binding(policy, binding.role, binding.member)


def add_binding(gcloud: GCloud, binding: Binding) -> None:
    gcloud.run(_policy_command(binding) + [
        "add-iam-policy-binding", binding.resource_id,
        f"--member={binding.member}",
        f"--role={binding.role}",
        "--condition=None",
        "--format=none",
    ])


def remove_binding(gcloud: GCloud, binding: Binding) -> None:
    gcloud.run(_policy_command(binding) + [
        "remove-iam-policy-binding", binding.resource_id,
        f"--member={binding.member}",
        f"--role={binding.role}",
        "--condition=None",
        "--format=none",
    ])


def list_instances(gcloud: GCloud) -> Optional[List[str]]:
    """Names of visible instances, or None when listing is not permitted."""
    result = gcloud.run(["compute", "instances", "list", "--format=value(name)"], check=False)
    if not result.ok:
        return None
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]
