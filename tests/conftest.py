"""
Shared fixtures: an in-memory stand-in for the gcloud client.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from iamlab.gcloud import CommandResult, GCloud
from iamlab.reference import load_reference


class FakeCloud(GCloud):
    """
    Interprets gcloud argv against in-memory resources.

    Commands run as the project owner unless act_as() selects a service
    account, in which case permissions come from the project policy
    bindings of that account and the reference role table.
    """

    def __init__(self, project: str = "demo-project", zone: str = "us-east1-b",
                 account: str = "student@altostrat.com", installed: bool = True):
        super().__init__("gcloud")
        self.config = {"project": project, "compute/zone": zone}
        self.account = account
        self.installed = installed
        self.buckets: Dict[str, Dict] = {}
        self.service_accounts: Dict[str, Dict] = {}
        self.instances: Dict[tuple, Dict] = {}
        self.policies: Dict[tuple, Dict[str, Set[str]]] = {}
        self.acting_as: Optional[str] = None
        self.fail_on: Dict[str, str] = {}
        self.calls: List[List[str]] = []

    # Helpers for tests

    @property
    def project(self) -> str:
        return self.config.get("project", "")

    def act_as(self, email: Optional[str]) -> None:
        self.acting_as = email

    def add_bucket(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        self.buckets[name] = {"labels": dict(labels or {}), "objects": {}}

    def project_policy(self) -> Dict[str, Set[str]]:
        return self.policies.setdefault(("project", self.project), {})

    def mutations(self) -> List[List[str]]:
        verbs = ("create", "delete", "update", "set", "rm", "cp",
                 "add-iam-policy-binding", "remove-iam-policy-binding")
        return [c for c in self.calls if any(v in c[1:4] for v in verbs)]

    # GCloud interface

    def is_installed(self) -> bool:
        return self.installed

    def _execute(self, argv: List[str]) -> CommandResult:
        self.calls.append(argv)
        args = argv[1:]
        joined = " ".join(args)

        for pattern, stderr in self.fail_on.items():
            if pattern in joined:
                return CommandResult(argv, 1, "", stderr)

        positional = [a for a in args if not a.startswith("--")]
        flags = {}
        for a in args:
            if a.startswith("--"):
                key, _, value = a[2:].partition("=")
                flags[key] = value

        handler = self._route(positional)
        if handler is None:
            return CommandResult(argv, 2, "", f"ERROR: unsupported command {joined}")

        try:
            stdout = handler(positional, flags)
        except _Fail as e:
            return CommandResult(argv, 1, "", e.stderr)

        if stdout is None:
            stdout = ""
        elif not isinstance(stdout, str):
            stdout = json.dumps(stdout)
        return CommandResult(argv, 0, stdout, "")

    def _route(self, pos: List[str]):
        key = tuple(pos[:3])
        routes = {
            ("auth", "list"): self._auth_list,
            ("config", "get-value"): self._config_get,
            ("config", "set"): self._config_set,
            ("storage", "buckets", "describe"): self._bucket_describe,
            ("storage", "buckets", "create"): self._bucket_create,
            ("storage", "buckets", "update"): self._bucket_update,
            ("storage", "buckets", "list"): self._bucket_list,
            ("storage", "rm"): self._storage_rm,
            ("storage", "cp"): self._storage_cp,
            ("iam", "service-accounts", "describe"): self._sa_describe,
            ("iam", "service-accounts", "create"): self._sa_create,
            ("iam", "service-accounts", "delete"): self._sa_delete,
            ("iam", "service-accounts", "get-iam-policy"): self._get_policy,
            ("iam", "service-accounts", "add-iam-policy-binding"): self._add_binding,
            ("iam", "service-accounts", "remove-iam-policy-binding"): self._remove_binding,
            ("projects", "get-iam-policy"): self._get_policy,
            ("projects", "add-iam-policy-binding"): self._add_binding,
            ("projects", "remove-iam-policy-binding"): self._remove_binding,
            ("compute", "instances", "describe"): self._instance_describe,
            ("compute", "instances", "create"): self._instance_create,
            ("compute", "instances", "delete"): self._instance_delete,
            ("compute", "instances", "list"): self._instance_list,
        }
        for length in (3, 2):
            handler = routes.get(key[:length])
            if handler:
                return handler
        return None

    # Permissions

    def _require(self, permission: str) -> None:
        if self.acting_as is None:
            return

        member = f"serviceAccount:{self.acting_as}"
        roles = load_reference()["roles"]
        granted = set()
        for role, members in self.project_policy().items():
            if member in members:
                granted.update(roles.get(role, {}).get("permissions", []))

        if permission not in granted:
            raise _Fail(f"ERROR: {self.acting_as} does not have {permission} access. HTTPError 403")

    # Handlers

    def _auth_list(self, pos, flags):
        return self.account

    def _config_get(self, pos, flags):
        return self.config.get(pos[2], "")

    def _config_set(self, pos, flags):
        self.config[pos[2]] = pos[3]

    @staticmethod
    def _bucket_name(url: str) -> str:
        return url[len("gs://"):].rstrip("/").split("/", 1)[0]

    def _bucket_describe(self, pos, flags):
        name = self._bucket_name(pos[3])
        if name not in self.buckets:
            raise _Fail(f"ERROR: gs://{name} not found: 404.")
        return name

    def _bucket_create(self, pos, flags):
        name = self._bucket_name(pos[3])
        if name in self.buckets:
            raise _Fail(f"ERROR: HTTPError 409: The requested bucket name is not available. You already own it.")
        self.add_bucket(name)
        self.buckets[name]["location"] = flags.get("location")

    def _bucket_update(self, pos, flags):
        name = self._bucket_name(pos[3])
        if name not in self.buckets:
            raise _Fail(f"ERROR: gs://{name} not found: 404.")
        for pair in flags.get("update-labels", "").split(","):
            if pair:
                key, _, value = pair.partition("=")
                self.buckets[name]["labels"][key] = value

    def _bucket_list(self, pos, flags):
        return [
            {"name": name, "storage_url": f"gs://{name}/", "labels": data["labels"] or None}
            for name, data in sorted(self.buckets.items())
        ]

    def _storage_rm(self, pos, flags):
        name = self._bucket_name(pos[2])
        if name not in self.buckets:
            raise _Fail(f"ERROR: gs://{name} not found: 404.")
        del self.buckets[name]

    def _storage_cp(self, pos, flags):
        src, dst = pos[2], pos[3]
        if src.startswith("gs://"):
            self._require("storage.objects.get")
            bucket, _, obj = src[len("gs://"):].partition("/")
            if bucket not in self.buckets or obj not in self.buckets[bucket]["objects"]:
                raise _Fail(f"ERROR: {src} not found: 404.")
            target = Path(dst)
            if target.is_dir():
                target = target / obj
            target.write_text(self.buckets[bucket]["objects"][obj])
            return None

        self._require("storage.objects.create")
        bucket = self._bucket_name(dst)
        if bucket not in self.buckets:
            raise _Fail(f"ERROR: {dst} not found: 404.")
        local = Path(src)
        if not local.exists():
            raise _Fail(f"ERROR: {src} does not exist.")
        self.buckets[bucket]["objects"][local.name] = local.read_text()

    def _sa_describe(self, pos, flags):
        email = pos[3]
        if email not in self.service_accounts:
            raise _Fail(f"ERROR: NOT_FOUND: Unknown service account {email}")
        return email

    def _sa_create(self, pos, flags):
        email = f"{pos[3]}@{self.project}.iam.gserviceaccount.com"
        if email in self.service_accounts:
            raise _Fail(f"ERROR: ALREADY_EXISTS: Service account {pos[3]} already exists")
        self.service_accounts[email] = {"display_name": flags.get("display-name")}

    def _sa_delete(self, pos, flags):
        email = pos[3]
        if email not in self.service_accounts:
            raise _Fail(f"ERROR: NOT_FOUND: Unknown service account {email}")
        del self.service_accounts[email]
        self.policies.pop(("service_account", email), None)

    def _policy_key(self, pos):
        if pos[0] == "projects":
            return ("project", pos[2])
        email = pos[3]
        if email not in self.service_accounts:
            raise _Fail(f"ERROR: NOT_FOUND: Unknown service account {email}")
        return ("service_account", email)

    def _get_policy(self, pos, flags):
        policy = self.policies.get(self._policy_key(pos), {})
        return {
            "bindings": [
                {"role": role, "members": sorted(members)}
                for role, members in sorted(policy.items()) if members
            ],
            "etag": "BwX=",
            "version": 1,
        }

    def _add_binding(self, pos, flags):
        policy = self.policies.setdefault(self._policy_key(pos), {})
        policy.setdefault(flags["role"], set()).add(flags["member"])

    def _remove_binding(self, pos, flags):
        policy = self.policies.get(self._policy_key(pos), {})
        members = policy.get(flags["role"], set())
        if flags["member"] not in members:
            raise _Fail(
                "ERROR: Policy binding with the specified principal, role, and condition not found!"
            )
        members.discard(flags["member"])

    def _instance_describe(self, pos, flags):
        key = (pos[3], flags.get("zone"))
        if key not in self.instances:
            raise _Fail(f"ERROR: (gcloud.compute.instances.describe) The resource '{pos[3]}' was not found")
        return pos[3]

    def _instance_create(self, pos, flags):
        key = (pos[3], flags.get("zone"))
        if key in self.instances:
            raise _Fail(f"ERROR: The resource '{pos[3]}' already exists")
        self.instances[key] = dict(flags)

    def _instance_delete(self, pos, flags):
        key = (pos[3], flags.get("zone"))
        if key not in self.instances:
            raise _Fail(f"ERROR: The resource '{pos[3]}' was not found")
        del self.instances[key]

    def _instance_list(self, pos, flags):
        self._require("compute.instances.list")
        return "\n".join(name for name, _ in sorted(self.instances))


class _Fail(Exception):
    def __init__(self, stderr: str):
        super().__init__(stderr)
        self.stderr = stderr


@pytest.fixture
def lab_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("IAMLAB_HOME", str(home))
    monkeypatch.delenv("IAMLAB_CONFIG", raising=False)
    return home


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def fake(lab_home):
    return FakeCloud()
