"""
Tests for the provisioning sequence.
"""

import os
import stat

import pytest

from iamlab.config import LabSettings
from iamlab.decommission import decommission
from iamlab.events import get_status_from_events, read_events
from iamlab.ids import is_lab_bucket
from iamlab.provision import grant_object_creator, provision
from iamlab.state import read_state

SA_EMAIL = "read-bucket-objects@demo-project.iam.gserviceaccount.com"


class TestProvision:
    """Test the full setup run against the fake cloud."""

    def test_creates_all_resources(self, fake, workdir):
        """A first run creates bucket, service account, instance and bindings."""
        result = provision(fake, workdir=workdir)

        assert result["status"] == "ready"
        assert len(fake.buckets) == 1

        bucket = next(iter(fake.buckets))
        assert result["bucket"] == bucket
        assert is_lab_bucket(bucket, "demo-project", "iam-lab")
        assert "sample.txt" in fake.buckets[bucket]["objects"]
        assert fake.buckets[bucket]["labels"]["lab"] == "iam-lab"

        assert SA_EMAIL in fake.service_accounts

        instance = fake.instances[("demoiam", "us-east1-b")]
        assert instance["service-account"] == SA_EMAIL
        assert instance["scopes"] == "storage-rw,compute-ro"
        assert instance["machine-type"] == "e2-micro"
        assert instance["tags"] == "iam-lab"
        assert "lab=iam-lab" in instance["labels"]

        project_policy = fake.project_policy()
        assert f"serviceAccount:{SA_EMAIL}" in project_policy["roles/storage.objectViewer"]
        assert "domain:altostrat.com" in project_policy["roles/compute.instanceAdmin.v1"]

        sa_policy = fake.policies[("service_account", SA_EMAIL)]
        assert "domain:altostrat.com" in sa_policy["roles/iam.serviceAccountUser"]

    def test_second_run_is_idempotent(self, fake, workdir):
        """Running setup twice creates nothing new the second time."""
        first = provision(fake, workdir=workdir)
        fake.calls.clear()

        second = provision(fake, workdir=workdir)

        assert second["status"] == "ready"
        assert second["bucket"] == first["bucket"]
        assert len(fake.buckets) == 1
        assert len(fake.service_accounts) == 1
        assert len(fake.instances) == 1

        creates = [c for c in fake.calls if "create" in c[1:4]]
        bindings_added = [c for c in fake.calls if "add-iam-policy-binding" in c]
        assert creates == []
        assert bindings_added == []

    def test_state_records_exact_names(self, fake, workdir):
        """State holds the exact identifiers for cleanup."""
        result = provision(fake, workdir=workdir)
        state = read_state("demo-project")

        assert state.buckets == [result["bucket"]]
        assert state.service_account_email == SA_EMAIL
        assert state.instance == {"name": "demoiam", "zone": "us-east1-b"}
        assert len(state.bindings) == 3
        assert state.local_files == ["test_permissions.sh"]

    def test_writes_executable_test_script(self, fake, workdir):
        """The verification script is generated with the bucket name."""
        result = provision(fake, workdir=workdir)
        script = workdir / "test_permissions.sh"

        assert script.exists()
        assert os.stat(script).st_mode & stat.S_IXUSR
        assert f"gs://{result['bucket']}/sample.txt" in script.read_text()

    def test_zone_fallback_is_persisted(self, fake, workdir):
        """Without a default zone the lab default is used and saved."""
        fake.config["compute/zone"] = ""

        result = provision(fake, workdir=workdir)

        assert result["zone"] == "us-central1-a"
        assert fake.config["compute/zone"] == "us-central1-a"
        assert ("demoiam", "us-central1-a") in fake.instances

    def test_zone_change_reuses_recorded_instance(self, fake, workdir):
        """A changed default zone does not create a second VM, and cleanup removes the first."""
        provision(fake, workdir=workdir)
        fake.config["compute/zone"] = "europe-west1-b"

        result = provision(fake, workdir=workdir)

        assert result["status"] == "ready"
        assert list(fake.instances) == [("demoiam", "us-east1-b")]
        assert read_state("demo-project").instance == {"name": "demoiam", "zone": "us-east1-b"}

        decommission(fake, assume_yes=True, workdir=workdir)

        assert fake.instances == {}

    def test_extra_labels(self, fake, workdir):
        """User labels are applied next to the lab labels."""
        provision(fake, workdir=workdir, extra_labels={"owner": "student"})

        bucket = next(iter(fake.buckets.values()))
        assert bucket["labels"]["owner"] == "student"
        assert bucket["labels"]["lab"] == "iam-lab"

    def test_custom_settings(self, fake, workdir):
        """Settings override the tutorial names."""
        settings = LabSettings(vm_name="otheriam", service_account_name="lab-reader")

        provision(fake, settings, workdir=workdir)

        assert ("otheriam", "us-east1-b") in fake.instances
        assert "lab-reader@demo-project.iam.gserviceaccount.com" in fake.service_accounts

    def test_events_and_status(self, fake, workdir):
        """Setup leaves a ready status in the event log."""
        provision(fake, workdir=workdir)

        types = [e["type"] for e in read_events("demo-project")]
        assert types[0] == "VARIABLES"
        assert "SETUP_START" in types
        assert types[-1] == "SETUP_DONE"
        assert get_status_from_events("demo-project") == "ready"


class TestPrerequisites:
    """Test that prerequisite failures abort before any mutation."""

    def test_gcloud_not_installed(self, fake, workdir):
        fake.installed = False

        result = provision(fake, workdir=workdir)

        assert result["status"] == "failed"
        assert result["reason_code"] == "prerequisite"
        assert fake.calls == []

    def test_not_authenticated(self, fake, workdir):
        fake.account = ""

        result = provision(fake, workdir=workdir)

        assert result["status"] == "failed"
        assert "gcloud auth login" in result["reason"]
        assert fake.mutations() == []

    def test_no_project(self, fake, workdir):
        fake.config["project"] = ""

        result = provision(fake, workdir=workdir)

        assert result["status"] == "failed"
        assert "gcloud config set project" in result["reason"]
        assert fake.mutations() == []
        assert not (workdir / "test_permissions.sh").exists()

    def test_bucket_name_too_long(self, fake, workdir):
        """A long domain-scoped project id fails cleanly before any mutation."""
        fake.config["project"] = "example.com:" + "a" * 40

        result = provision(fake, workdir=workdir)

        assert result["status"] == "failed"
        assert result["reason_code"] == "invalid_name"
        assert "longer than" in result["reason"]
        assert fake.mutations() == []


class TestProvisionFailure:
    """Test the abort path when a gcloud command fails mid-sequence."""

    def test_failure_aborts_and_keeps_partial_state(self, fake, workdir):
        """A failing instance create stops the run; earlier resources stay recorded."""
        fake.fail_on["compute instances create"] = (
            "ERROR: (gcloud.compute.instances.create) QUOTA_EXCEEDED: Quota 'CPUS' exceeded."
        )

        result = provision(fake, workdir=workdir)

        assert result["status"] == "failed"
        assert result["reason_code"] == "quota_exceeded"
        assert fake.instances == {}
        assert not (workdir / "test_permissions.sh").exists()

        state = read_state("demo-project")
        assert state.buckets == list(fake.buckets)
        assert state.service_account_email == SA_EMAIL
        assert get_status_from_events("demo-project") == "failed"

    def test_rerun_after_failure_completes(self, fake, workdir):
        """The idempotent setup can simply be re-run after a failure."""
        fake.fail_on["compute instances create"] = "ERROR: QUOTA_EXCEEDED"
        failed = provision(fake, workdir=workdir)
        fake.fail_on.clear()

        result = provision(fake, workdir=workdir)

        assert failed["status"] == "failed"
        assert result["status"] == "ready"
        assert len(fake.buckets) == 1
        assert ("demoiam", "us-east1-b") in fake.instances


class TestGrantObjectCreator:
    """Test the role upgrade step."""

    def test_grant_after_setup(self, fake, workdir):
        provision(fake, workdir=workdir)

        result = grant_object_creator(fake)

        assert result["status"] == "granted"
        assert result["added"] is True
        assert f"serviceAccount:{SA_EMAIL}" in fake.project_policy()["roles/storage.objectCreator"]
        assert result["binding"] in read_state("demo-project").bindings

    def test_grant_twice_is_noop(self, fake, workdir):
        provision(fake, workdir=workdir)
        grant_object_creator(fake)

        result = grant_object_creator(fake)

        assert result["status"] == "granted"
        assert result["added"] is False

    def test_grant_without_service_account(self, fake):
        result = grant_object_creator(fake)

        assert result["status"] == "failed"
        assert result["reason_code"] == "not_found"
        assert fake.project_policy() == {}

    def test_failed_grant_keeps_lab_ready(self, fake, workdir):
        provision(fake, workdir=workdir)
        fake.fail_on["add-iam-policy-binding"] = "ERROR: PERMISSION_DENIED"

        result = grant_object_creator(fake)

        assert result["status"] == "failed"
        assert result["reason_code"] == "permission_denied"
        assert get_status_from_events("demo-project") == "ready"
