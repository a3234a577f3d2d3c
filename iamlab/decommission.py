"""
Decommissioning sequence for the IAM lab.

Reverses provisioning: instance, buckets, policy bindings, service
account, then local files. Missing resources produce warnings, not errors.
Policy binding removal is best effort. Any other gcloud failure aborts the
sequence and leaves whatever was not yet deleted in place.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import click

from . import resources
from .cleanup import find_lab_buckets
from .config import LabContext, LabSettings, service_account_email
from .console import print_banner, print_error, print_line, print_status, print_success, print_warning
from .events import EventTypes, emit_event
from .gcloud import GCloud, GCloudError, PrerequisiteError
from .provision import resolve_project, resolve_zone
from .resources import Binding
from .state import LabState, clear_state, read_state, write_state

logger = logging.getLogger(__name__)


def confirm_cleanup(settings: LabSettings, confirm: Callable[..., bool]) -> bool:
    """
    Ask the operator before anything is deleted.

    Returns:
        True if the operator agreed
    """
    print_warning("This will delete all resources created during the IAM lab!")
    print_line("This includes:")
    print_line(f"  • Cloud Storage buckets created by the lab ({settings.bucket_marker})")
    print_line(f"  • Service account '{settings.service_account_name}'")
    print_line(f"  • VM instance '{settings.vm_name}'")
    print_line("  • Associated IAM policy bindings")
    print_line()

    return confirm("Are you sure you want to proceed?", default=False)


def setup_variables(gcloud: GCloud, settings: LabSettings) -> tuple[LabContext, Optional[LabState]]:
    print_status("Setting up variables...")

    project_id = resolve_project(gcloud)
    state = read_state(project_id)

    if state is not None and state.instance:
        zone = state.instance.get("zone") or resolve_zone(gcloud, settings, persist=False)
    else:
        zone = resolve_zone(gcloud, settings, persist=False)

    ctx = LabContext(
        project_id=project_id,
        zone=zone,
        service_account_email=service_account_email(settings.service_account_name, project_id),
        run_id=state.run_id if state else "",
        bucket_name=(state.current_bucket or "") if state else "",
    )

    print_success("Variables configured")
    print_line(f"  Project ID: {ctx.project_id}")
    print_line(f"  Service Account: {settings.service_account_name}")
    print_line(f"  VM Name: {settings.vm_name}")
    print_line(f"  Zone: {ctx.zone}")
    if state is None:
        print_warning("No recorded lab state found; buckets will be discovered by name and label")

    return ctx, state


def _save(state: Optional[LabState]) -> None:
    if state is not None:
        write_state(state)


def delete_vm_instance(gcloud: GCloud, settings: LabSettings, ctx: LabContext, state: Optional[LabState]) -> bool:
    print_status("Deleting VM instance...")

    if not resources.instance_exists(gcloud, settings.vm_name, ctx.zone):
        print_warning(f"VM instance {settings.vm_name} not found")
        emit_event(ctx.project_id, EventTypes.NOT_FOUND, {"kind": "instance", "id": settings.vm_name})
        return False

    resources.delete_instance(gcloud, settings.vm_name, ctx.zone)
    if state is not None:
        state.instance = None
        _save(state)

    print_success(f"Deleted VM instance: {settings.vm_name}")
    emit_event(ctx.project_id, EventTypes.DELETED, {"kind": "instance", "id": settings.vm_name, "zone": ctx.zone})
    return True


def delete_storage_buckets(
    gcloud: GCloud,
    settings: LabSettings,
    ctx: LabContext,
    state: Optional[LabState],
) -> List[str]:
    """
    Delete the lab buckets.

    Returns:
        Names of the buckets deleted
    """
    print_status("Deleting Cloud Storage buckets...")

    found = find_lab_buckets(gcloud, settings, ctx.project_id, state)
    if not found:
        print_warning("No IAM lab buckets found")
        emit_event(ctx.project_id, EventTypes.NOT_FOUND, {"kind": "bucket"})
        return []

    deleted = []
    for bucket in found:
        name = bucket.identifier

        if not resources.bucket_exists(gcloud, name):
            print_warning(f"Bucket {name} not found")
            emit_event(ctx.project_id, EventTypes.NOT_FOUND, {"kind": "bucket", "id": name})
        else:
            print_status(f"Deleting bucket: gs://{name}")
            resources.delete_bucket(gcloud, name)
            deleted.append(name)
            print_success(f"Deleted bucket: gs://{name}")
            emit_event(ctx.project_id, EventTypes.DELETED, {"kind": "bucket", "id": name, "reason": bucket.reason})

        if state is not None:
            state.remove_bucket(name)
            _save(state)

    return deleted


def lab_bindings(settings: LabSettings, ctx: LabContext, state: Optional[LabState]) -> List[Binding]:
    """
    Bindings cleanup tries to remove: the fixed lab set plus anything
    recorded in state, without duplicates.
    """
    sa_member = f"serviceAccount:{ctx.service_account_email}"
    bindings = [
        Binding(resources.PROJECT, ctx.project_id, settings.viewer_role, sa_member),
        Binding(resources.PROJECT, ctx.project_id, settings.creator_role, sa_member),
        Binding(resources.PROJECT, ctx.project_id, settings.domain_project_role, settings.domain_member),
        Binding(resources.SERVICE_ACCOUNT, ctx.service_account_email,
                settings.domain_service_account_role, settings.domain_member),
    ]

    if state is not None:
        for recorded in state.bindings:
            binding = Binding.from_dict(recorded)
            if binding not in bindings:
                bindings.append(binding)

    return bindings


def remove_iam_bindings(
    gcloud: GCloud,
    settings: LabSettings,
    ctx: LabContext,
    state: Optional[LabState],
) -> int:
    """
    Remove lab policy bindings, tolerating ones that are already gone.

    Returns:
        Number of bindings removed
    """
    print_status("Removing IAM policy bindings...")

    removed = 0
    for binding in lab_bindings(settings, ctx, state):
        try:
            resources.remove_binding(gcloud, binding)
        except GCloudError as e:
            logger.debug("Binding removal failed: %s", e)
            print_warning(f"Could not remove {binding.describe()} ({e.reason})")
            emit_event(ctx.project_id, EventTypes.BINDING_REMOVE_FAILED, {
                **binding.to_dict(),
                "reason_code": e.reason,
            })
        else:
            removed += 1
            print_success(f"Removed {binding.role} from {binding.member}")
            emit_event(ctx.project_id, EventTypes.BINDING_REMOVED, binding.to_dict())

        if state is not None:
            state.remove_binding(binding.to_dict())
            _save(state)

    return removed


def delete_service_account(gcloud: GCloud, ctx: LabContext, state: Optional[LabState]) -> bool:
    print_status("Deleting service account...")

    if not resources.service_account_exists(gcloud, ctx.service_account_email):
        print_warning(f"Service account {ctx.service_account_email} not found")
        emit_event(ctx.project_id, EventTypes.NOT_FOUND, {
            "kind": "service_account",
            "id": ctx.service_account_email,
        })
        return False

    resources.delete_service_account(gcloud, ctx.service_account_email)
    if state is not None:
        state.service_account_email = None
        _save(state)

    print_success(f"Deleted service account: {ctx.service_account_email}")
    emit_event(ctx.project_id, EventTypes.DELETED, {
        "kind": "service_account",
        "id": ctx.service_account_email,
    })
    return True


def cleanup_local_files(settings: LabSettings, ctx: LabContext, state: Optional[LabState], workdir: Path) -> List[str]:
    print_status("Cleaning up local files...")

    names = list(settings.local_files)
    if state is not None:
        names += [name for name in state.local_files if name not in names]

    removed = []
    for name in names:
        path = workdir / name
        if path.is_file():
            path.unlink()
            removed.append(name)
            print_success(f"Removed local file: {name}")
            emit_event(ctx.project_id, EventTypes.FILE_REMOVED, {"path": str(path)})

    return removed


def display_summary(settings: LabSettings) -> None:
    print_success("Cleanup completed successfully!")
    print_line()
    print_line("Removed resources:")
    print_line(f"  ✓ VM instances with name '{settings.vm_name}'")
    print_line(f"  ✓ Cloud Storage buckets created by the lab ({settings.bucket_marker})")
    print_line(f"  ✓ Service account '{settings.service_account_name}'")
    print_line("  ✓ Associated IAM policy bindings")
    print_line("  ✓ Local test files")
    print_line()
    print_status("All IAM lab resources have been cleaned up")


def handle_error(error: Exception) -> None:
    print_error(f"An error occurred during cleanup: {error}")
    print_status("Some resources may still exist. Please check manually:")
    print_line("  • gcloud compute instances list")
    print_line("  • gcloud storage buckets list")
    print_line("  • gcloud iam service-accounts list")


def decommission(
    gcloud: Optional[GCloud] = None,
    settings: Optional[LabSettings] = None,
    assume_yes: bool = False,
    workdir: Optional[Path] = None,
    confirm: Optional[Callable[..., bool]] = None,
) -> Dict[str, Any]:
    """
    Run the full decommissioning sequence.

    Args:
        gcloud: gcloud client (defaults to the one on PATH)
        settings: Lab settings
        assume_yes: Skip the confirmation prompt
        workdir: Directory holding the generated local files (defaults to cwd)
        confirm: Prompt function, defaults to click.confirm

    Returns:
        Result dictionary with "status" of "cleaned", "cancelled" or "failed"
    """
    gcloud = gcloud or GCloud()
    settings = settings or LabSettings()
    workdir = Path(workdir) if workdir else Path.cwd()
    confirm = confirm or click.confirm

    print_banner("Starting Google Cloud IAM Lab Cleanup")

    if not assume_yes and not confirm_cleanup(settings, confirm):
        print_status("Cleanup cancelled")
        return {"status": "cancelled"}

    try:
        ctx, state = setup_variables(gcloud, settings)
    except (PrerequisiteError, GCloudError) as e:
        print_error(str(e))
        return {"status": "failed", "reason_code": "prerequisite", "reason": str(e)}

    emit_event(ctx.project_id, EventTypes.CLEANUP_START, {"run_id": ctx.run_id})

    try:
        instance_deleted = delete_vm_instance(gcloud, settings, ctx, state)
        buckets = delete_storage_buckets(gcloud, settings, ctx, state)
        bindings_removed = remove_iam_bindings(gcloud, settings, ctx, state)
        sa_deleted = delete_service_account(gcloud, ctx, state)
        files = cleanup_local_files(settings, ctx, state, workdir)
    except GCloudError as e:
        logger.debug("Cleanup aborted", exc_info=True)
        handle_error(e)
        emit_event(ctx.project_id, EventTypes.ERROR, {
            "reason": str(e),
            "reason_code": e.reason,
            "hint": "Some resources may still exist",
        })
        return {
            "status": "failed",
            "reason_code": e.reason,
            "reason": str(e),
            "project_id": ctx.project_id,
        }

    clear_state(ctx.project_id)
    display_summary(settings)
    emit_event(ctx.project_id, EventTypes.CLEANUP_DONE, {
        "buckets": buckets,
        "instance_deleted": instance_deleted,
        "service_account_deleted": sa_deleted,
    })

    return {
        "status": "cleaned",
        "project_id": ctx.project_id,
        "instance_deleted": instance_deleted,
        "buckets_deleted": buckets,
        "bindings_removed": bindings_removed,
        "service_account_deleted": sa_deleted,
        "files_removed": files,
    }
