"""
Provisioning sequence for the IAM lab.

Steps run in a fixed order and each one is idempotent: it checks whether
its resource already exists and skips creation if so. Identifiers resolved
by early steps (project, zone, bucket, service account email) are carried
in a LabContext and recorded in the project's state file as soon as each
resource is created.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import resources
from .config import LabContext, LabSettings, service_account_email
from .console import print_banner, print_error, print_line, print_status, print_success, print_warning
from .events import EventTypes, emit_event
from .gcloud import GCloud, GCloudError, PrerequisiteError
from .ids import new_bucket_name, new_run_id
from .labels import base_labels
from .resources import Binding
from .state import LabState, read_state, write_state
from .verify import write_test_script

logger = logging.getLogger(__name__)


def check_prerequisites(gcloud: GCloud) -> str:
    """
    Check that gcloud is installed and authenticated.

    Returns:
        The active account

    Raises:
        PrerequisiteError: If gcloud is missing or no account is active
    """
    print_status("Checking prerequisites...")

    if not gcloud.is_installed():
        raise PrerequisiteError("gcloud CLI is not installed. Please install it first.")

    account = resources.active_account(gcloud)
    if not account:
        raise PrerequisiteError(
            "No active gcloud authentication found. Please run 'gcloud auth login' first."
        )

    print_success("Prerequisites check passed")
    return account.splitlines()[0]


def resolve_project(gcloud: GCloud) -> str:
    project_id = resources.config_value(gcloud, "project")
    if not project_id:
        raise PrerequisiteError(
            "No project set. Please run 'gcloud config set project PROJECT_ID' first."
        )
    return project_id


def resolve_zone(gcloud: GCloud, settings: LabSettings, persist: bool) -> str:
    """
    Read the default compute zone, falling back to the lab default.

    Args:
        persist: Write the fallback zone into the gcloud configuration
    """
    zone = resources.config_value(gcloud, "compute/zone")
    if zone:
        return zone

    zone = settings.default_zone
    if persist:
        print_warning(f"No default zone set. Using {zone}")
        resources.set_config_value(gcloud, "compute/zone", zone)
    return zone


def setup_variables(gcloud: GCloud, settings: LabSettings) -> tuple[LabContext, LabState]:
    """
    Resolve run identifiers and load (or start) the project's state.

    A bucket recorded by an earlier run is reused so that re-running the
    setup never creates a second bucket.
    """
    print_status("Setting up variables...")

    project_id = resolve_project(gcloud)
    zone = resolve_zone(gcloud, settings, persist=True)

    state = read_state(project_id)
    if state is None:
        state = LabState(project_id=project_id, run_id=new_run_id(), zone=zone)
    state.zone = zone

    bucket_name = state.current_bucket or new_bucket_name(project_id, settings.bucket_marker)

    ctx = LabContext(
        project_id=project_id,
        zone=zone,
        service_account_email=service_account_email(settings.service_account_name, project_id),
        run_id=state.run_id,
        bucket_name=bucket_name,
    )

    print_success("Variables configured")
    print_line(f"  Project ID: {ctx.project_id}")
    print_line(f"  Bucket Name: {ctx.bucket_name}")
    print_line(f"  Zone: {ctx.zone}")

    emit_event(project_id, EventTypes.VARIABLES, ctx.to_dict())
    return ctx, state


def create_storage_bucket(
    gcloud: GCloud,
    settings: LabSettings,
    ctx: LabContext,
    state: LabState,
    labels: Dict[str, str],
) -> bool:
    """
    Ensure the lab bucket exists and holds the sample object.

    Returns:
        True if the bucket was created by this call
    """
    print_status("Creating Cloud Storage bucket...")
    emit_event(ctx.project_id, EventTypes.STEP_START, {"step": "bucket"})

    created = False
    if resources.bucket_exists(gcloud, ctx.bucket_name):
        print_warning(f"Bucket {ctx.bucket_name} already exists")
        emit_event(ctx.project_id, EventTypes.SKIPPED, {"kind": "bucket", "id": ctx.bucket_name})
    else:
        resources.create_bucket(gcloud, ctx.bucket_name, settings.bucket_location, settings.storage_class)
        state.add_bucket(ctx.bucket_name)
        write_state(state)
        resources.label_bucket(gcloud, ctx.bucket_name, labels)
        created = True
        print_success(f"Created bucket: {ctx.bucket_name}")
        emit_event(ctx.project_id, EventTypes.CREATED, {"kind": "bucket", "id": ctx.bucket_name})

    # The sample is staged in a scratch directory so a user's own sample.txt is untouched
    with tempfile.TemporaryDirectory() as scratch:
        sample_path = os.path.join(scratch, settings.sample_object)
        with open(sample_path, "w") as f:
            f.write(settings.sample_body + "\n")
        resources.upload_file(gcloud, sample_path, ctx.bucket_name)

    print_success(f"Uploaded {settings.sample_object} to bucket")
    emit_event(ctx.project_id, EventTypes.OBJECT_UPLOADED, {
        "bucket": ctx.bucket_name,
        "object": settings.sample_object,
    })
    return created


def _ensure_binding(gcloud: GCloud, ctx: LabContext, state: LabState, binding: Binding) -> bool:
    """Add a binding unless the policy already has it. Returns True if added."""
    if resources.binding_present(gcloud, binding):
        logger.debug("Binding already present: %s", binding.describe())
        emit_event(ctx.project_id, EventTypes.SKIPPED, {"kind": "binding", **binding.to_dict()})
        # Record it anyway so cleanup knows to remove it
        state.add_binding(binding.to_dict())
        write_state(state)
        return False

    resources.add_binding(gcloud, binding)
    state.add_binding(binding.to_dict())
    write_state(state)
    emit_event(ctx.project_id, EventTypes.BINDING_ADDED, binding.to_dict())
    return True


def create_service_account(gcloud: GCloud, settings: LabSettings, ctx: LabContext, state: LabState) -> bool:
    """
    Ensure the lab service account exists and holds the viewer role.

    Returns:
        True if the service account was created by this call
    """
    print_status("Creating service account...")
    emit_event(ctx.project_id, EventTypes.STEP_START, {"step": "service_account"})

    created = False
    if resources.service_account_exists(gcloud, ctx.service_account_email):
        print_warning(f"Service account {settings.service_account_name} already exists")
        emit_event(ctx.project_id, EventTypes.SKIPPED, {
            "kind": "service_account",
            "id": ctx.service_account_email,
        })
    else:
        resources.create_service_account(
            gcloud,
            settings.service_account_name,
            settings.service_account_display_name,
            settings.service_account_description,
        )
        created = True
        print_success(f"Created service account: {settings.service_account_name}")
        emit_event(ctx.project_id, EventTypes.CREATED, {
            "kind": "service_account",
            "id": ctx.service_account_email,
        })

    state.service_account_email = ctx.service_account_email
    write_state(state)

    viewer = Binding(
        resources.PROJECT,
        ctx.project_id,
        settings.viewer_role,
        f"serviceAccount:{ctx.service_account_email}",
    )
    if _ensure_binding(gcloud, ctx, state, viewer):
        print_success("Assigned Storage Object Viewer role to service account")
    else:
        print_warning("Service account already has the Storage Object Viewer role")

    return created


def create_vm_instance(
    gcloud: GCloud,
    settings: LabSettings,
    ctx: LabContext,
    state: LabState,
    labels: Dict[str, str],
) -> bool:
    """
    Ensure the lab VM exists, running as the lab service account.

    Returns:
        True if the instance was created by this call
    """
    print_status("Creating VM instance...")
    emit_event(ctx.project_id, EventTypes.STEP_START, {"step": "instance"})

    recorded = state.instance
    if recorded and resources.instance_exists(gcloud, recorded["name"], recorded["zone"]):
        # The recorded zone wins over the current default zone
        print_warning(f"VM instance {recorded['name']} already exists in {recorded['zone']}")
        emit_event(ctx.project_id, EventTypes.SKIPPED, {"kind": "instance", **recorded})
        return False

    instance_id = {"name": settings.vm_name, "zone": ctx.zone}

    if resources.instance_exists(gcloud, settings.vm_name, ctx.zone):
        print_warning(f"VM instance {settings.vm_name} already exists")
        emit_event(ctx.project_id, EventTypes.SKIPPED, {"kind": "instance", **instance_id})
        state.instance = instance_id
        write_state(state)
        return False

    resources.create_instance(
        gcloud,
        name=settings.vm_name,
        zone=ctx.zone,
        machine_type=settings.machine_type,
        image_family=settings.image_family,
        image_project=settings.image_project,
        service_account=ctx.service_account_email,
        scopes=settings.scopes,
        tags=[settings.network_tag],
        labels=labels,
    )
    state.instance = instance_id
    write_state(state)

    print_success(f"Created VM instance: {settings.vm_name}")
    emit_event(ctx.project_id, EventTypes.CREATED, {"kind": "instance", **instance_id})
    return True


def setup_domain_permissions(gcloud: GCloud, settings: LabSettings, ctx: LabContext, state: LabState) -> None:
    print_status("Setting up domain permissions...")
    emit_event(ctx.project_id, EventTypes.STEP_START, {"step": "domain_permissions"})

    sa_user = Binding(
        resources.SERVICE_ACCOUNT,
        ctx.service_account_email,
        settings.domain_service_account_role,
        settings.domain_member,
    )
    if _ensure_binding(gcloud, ctx, state, sa_user):
        print_success(f"Granted Service Account User role to {settings.domain}")
    else:
        print_warning(f"{settings.domain} already has the Service Account User role")

    instance_admin = Binding(
        resources.PROJECT,
        ctx.project_id,
        settings.domain_project_role,
        settings.domain_member,
    )
    if _ensure_binding(gcloud, ctx, state, instance_admin):
        print_success(f"Granted Compute Instance Admin role to {settings.domain}")
    else:
        print_warning(f"{settings.domain} already has the Compute Instance Admin role")


def create_test_script(settings: LabSettings, ctx: LabContext, state: LabState, workdir: Path) -> Path:
    print_status("Creating test script...")

    script_path = write_test_script(ctx.bucket_name, settings, workdir)
    state.add_local_file(settings.test_script_name)
    write_state(state)

    print_success(f"Created {settings.test_script_name} script")
    emit_event(ctx.project_id, EventTypes.SCRIPT_WRITTEN, {"path": str(script_path)})
    return script_path


def grant_command(settings: LabSettings, ctx: LabContext) -> List[str]:
    """Lines of the gcloud command that grants the creator role."""
    return [
        f"gcloud projects add-iam-policy-binding {ctx.project_id} \\",
        f"  --member=\"serviceAccount:{ctx.service_account_email}\" \\",
        f"  --role=\"{settings.creator_role}\"",
    ]


def display_summary(settings: LabSettings, ctx: LabContext, state: LabState) -> None:
    instance = state.instance or {"name": settings.vm_name, "zone": ctx.zone}

    print_success("Setup completed successfully!")
    print_line()
    print_line("Resources created:")
    print_line(f"  • Cloud Storage bucket: gs://{ctx.bucket_name}")
    print_line(f"  • Service account: {ctx.service_account_email}")
    print_line(f"  • VM instance: {instance['name']} (zone: {instance['zone']})")
    print_line()
    print_line("Next steps:")
    print_line(f"  1. SSH to the VM: gcloud compute ssh {instance['name']} --zone={instance['zone']}")
    print_line(f"  2. Run the test script: ./{settings.test_script_name}")
    print_line("  3. To grant Storage Object Creator role run 'iamlab grant-upload', or:")
    for line in grant_command(settings, ctx):
        print_line(f"     {line}")
    print_line()
    print_line(f"Bucket name for reference: {ctx.bucket_name}")


def provision(
    gcloud: Optional[GCloud] = None,
    settings: Optional[LabSettings] = None,
    extra_labels: Optional[Dict[str, str]] = None,
    workdir: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Run the full provisioning sequence.

    Args:
        gcloud: gcloud client (defaults to the one on PATH)
        settings: Lab settings (defaults to the tutorial values)
        extra_labels: Labels added to the bucket and instance
        workdir: Directory for the generated test script (defaults to cwd)

    Returns:
        Result dictionary with "status" of "ready" or "failed"
    """
    gcloud = gcloud or GCloud()
    settings = settings or LabSettings()
    workdir = Path(workdir) if workdir else Path.cwd()

    print_banner("Starting Google Cloud IAM Lab Setup")

    try:
        check_prerequisites(gcloud)
        ctx, state = setup_variables(gcloud, settings)
    except PrerequisiteError as e:
        print_error(str(e))
        return {"status": "failed", "reason_code": "prerequisite", "reason": str(e)}
    except ValueError as e:
        print_error(str(e))
        return {"status": "failed", "reason_code": "invalid_name", "reason": str(e)}
    except GCloudError as e:
        print_error(f"Could not read the gcloud configuration: {e}")
        return {"status": "failed", "reason_code": e.reason, "reason": str(e)}

    emit_event(ctx.project_id, EventTypes.SETUP_START, {"run_id": ctx.run_id})
    labels = base_labels(ctx.run_id, settings.bucket_marker, {**settings.labels, **(extra_labels or {})})

    try:
        create_storage_bucket(gcloud, settings, ctx, state, labels)
        create_service_account(gcloud, settings, ctx, state)
        create_vm_instance(gcloud, settings, ctx, state, labels)
        setup_domain_permissions(gcloud, settings, ctx, state)
        create_test_script(settings, ctx, state, workdir)
    except GCloudError as e:
        logger.debug("Provisioning aborted", exc_info=True)
        print_error(f"An error occurred during setup: {e}")
        print_status(e.hint)
        print_status("Resources created so far are left in place. Run 'iamlab cleanup' to remove them.")
        emit_event(ctx.project_id, EventTypes.ERROR, {
            "reason": str(e),
            "reason_code": e.reason,
            "hint": e.hint,
        })
        return {
            "status": "failed",
            "reason_code": e.reason,
            "reason": str(e),
            "project_id": ctx.project_id,
        }

    display_summary(settings, ctx, state)
    emit_event(ctx.project_id, EventTypes.SETUP_DONE, {"bucket": ctx.bucket_name})

    return {
        "status": "ready",
        "project_id": ctx.project_id,
        "zone": ctx.zone,
        "bucket": ctx.bucket_name,
        "service_account": ctx.service_account_email,
        "instance": settings.vm_name,
        "run_id": ctx.run_id,
    }


def grant_object_creator(
    gcloud: Optional[GCloud] = None,
    settings: Optional[LabSettings] = None,
) -> Dict[str, Any]:
    """
    Bind the Storage Object Creator role to the lab service account.

    This is the tutorial's follow-up step that lets the VM upload objects.
    The binding is recorded in state so cleanup removes it.
    """
    gcloud = gcloud or GCloud()
    settings = settings or LabSettings()

    try:
        project_id = resolve_project(gcloud)
    except PrerequisiteError as e:
        print_error(str(e))
        return {"status": "failed", "reason_code": "prerequisite", "reason": str(e)}

    state = read_state(project_id) or LabState(project_id=project_id, run_id=new_run_id())
    email = service_account_email(settings.service_account_name, project_id)
    ctx = LabContext(project_id=project_id, zone=state.zone, service_account_email=email, run_id=state.run_id)

    print_status("Granting Storage Object Creator role...")
    creator = Binding(resources.PROJECT, project_id, settings.creator_role, f"serviceAccount:{email}")

    try:
        if not resources.service_account_exists(gcloud, email):
            print_error(f"Service account {email} not found. Run 'iamlab setup' first.")
            return {"status": "failed", "reason_code": "not_found", "reason": f"{email} not found"}

        added = _ensure_binding(gcloud, ctx, state, creator)
    except GCloudError as e:
        print_error(f"Failed to grant role: {e}")
        print_status(e.hint)
        emit_event(project_id, EventTypes.ROLE_GRANT_FAILED, {"reason": str(e), "reason_code": e.reason})
        return {"status": "failed", "reason_code": e.reason, "reason": str(e)}

    if added:
        print_success(f"Granted {settings.creator_role} to {email}")
    else:
        print_warning(f"{email} already has {settings.creator_role}")

    emit_event(project_id, EventTypes.ROLE_GRANTED, creator.to_dict())
    return {"status": "granted", "added": added, "binding": creator.to_dict()}
