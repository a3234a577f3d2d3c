"""
Click CLI interface for the IAM lab.
"""

import json
import logging
import os
import sys
from typing import Optional

import click

from . import __version__
from .config import load_settings
from .decommission import decommission
from .events import get_last_event, get_status_from_events, read_events, tail_events
from .gcloud import GCloud, GCloudError, PrerequisiteError, make_gcloud
from .labels import parse_user_labels
from .provision import grant_object_creator, provision, resolve_project, resolve_zone
from .reference import list_roles, load_reference, permissions_for, role_title, roles_granting
from .state import read_state
from .cleanup import list_lab_resources
from .verify import ALL_CHECKS, run_checks


def _gcloud(ctx: click.Context) -> GCloud:
    return ctx.obj["gcloud"]


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML settings file")
@click.option("--verbose", "-v", is_flag=True, help="Log every gcloud command")
@click.version_option(__version__, prog_name="iamlab")
@click.pass_context
def main(ctx, config_path: Optional[str], verbose: bool):
    """
    iamlab - Set up and tear down the Google Cloud IAM lab.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ctx.ensure_object(dict)
    try:
        ctx.obj.setdefault("settings", load_settings(config_path))
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Invalid settings: {e}", err=True)
        sys.exit(1)
    ctx.obj.setdefault("gcloud", make_gcloud(os.environ.get("IAMLAB_GCLOUD")))


@main.command("setup")
@click.option("--label", "labels", multiple=True, help="Extra labels in format 'key=value' (repeatable)")
@click.option("--json", "output_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def setup_cmd(ctx, labels: tuple, output_json: bool):
    """
    Create the lab bucket, service account, VM and policy bindings.
    """
    extra_labels = None
    if labels:
        try:
            extra_labels = parse_user_labels(list(labels))
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    result = provision(_gcloud(ctx), ctx.obj["settings"], extra_labels=extra_labels)

    if output_json:
        print(json.dumps(result, indent=2))

    sys.exit(0 if result["status"] == "ready" else 1)


@main.command("cleanup")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Delete without asking for confirmation")
@click.option("--json", "output_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def cleanup_cmd(ctx, assume_yes: bool, output_json: bool):
    """
    Delete every resource the lab created.
    """
    result = decommission(_gcloud(ctx), ctx.obj["settings"], assume_yes=assume_yes)

    if output_json:
        print(json.dumps(result, indent=2))

    sys.exit(1 if result["status"] == "failed" else 0)


@main.command("grant-upload")
@click.pass_context
def grant_upload_cmd(ctx):
    """
    Grant the Storage Object Creator role to the lab service account.
    """
    result = grant_object_creator(_gcloud(ctx), ctx.obj["settings"])
    sys.exit(0 if result["status"] == "granted" else 1)


@main.command("verify")
@click.option("--bucket", help="Lab bucket (defaults to the one recorded by setup)")
@click.option("--only", type=click.Choice(ALL_CHECKS), help="Run a single check")
@click.option("--json", "output_json", is_flag=True, help="Print results as JSON")
@click.pass_context
def verify_cmd(ctx, bucket: Optional[str], only: Optional[str], output_json: bool):
    """
    Run the permission checks with the active gcloud identity.
    """
    gcloud = _gcloud(ctx)
    settings = ctx.obj["settings"]

    if not bucket:
        try:
            state = read_state(resolve_project(gcloud))
        except PrerequisiteError as e:
            click.echo(str(e), err=True)
            sys.exit(1)
        bucket = state.current_bucket if state else None

    if not bucket:
        click.echo("No lab bucket recorded. Pass --bucket or run 'iamlab setup' first.", err=True)
        sys.exit(1)

    try:
        results = run_checks(gcloud, bucket, settings, only=only)
    except PrerequisiteError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    if output_json:
        print(json.dumps([check.__dict__ for check in results], indent=2))
    else:
        click.echo(f"Testing IAM permissions on gs://{bucket}")
        for check in results:
            note = "" if check.passed == check.expected else " (differs from the lab's starting point)"
            click.echo(f"  {check.marker} {check.name}: {check.detail}{note}")

    # Only the download and rename checks are required to pass
    failed_required = [c for c in results if c.expected and not c.passed]
    sys.exit(1 if failed_required else 0)


@main.command("status")
@click.option("--live", is_flag=True, help="Query gcloud for resources that currently exist")
@click.option("--format", "output_format", type=click.Choice(["json", "human"]), default="human", help="Output format")
@click.pass_context
def status_cmd(ctx, live: bool, output_format: str):
    """
    Show the lab status for the active project.
    """
    gcloud = _gcloud(ctx)
    settings = ctx.obj["settings"]

    try:
        project_id = resolve_project(gcloud)
    except PrerequisiteError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    state = read_state(project_id)
    result = {
        "project_id": project_id,
        "status": get_status_from_events(project_id),
        "state": state.to_dict() if state else None,
    }

    if live:
        try:
            zone = state.zone if state and state.zone else resolve_zone(gcloud, settings, persist=False)
            found = list_lab_resources(gcloud, settings, project_id, zone, state)
        except (GCloudError, PrerequisiteError) as e:
            click.echo(f"Failed to query resources: {e}", err=True)
            sys.exit(1)
        result["live"] = [r.__dict__ for r in found]

    if output_format == "json":
        print(json.dumps(result, indent=2))
        return

    click.echo(f"🆔 Project: {project_id}")
    click.echo(f"📊 Status: {result['status'].upper()}")
    last = get_last_event(project_id)
    if last:
        click.echo(f"🕒 Last event: {last.get('type')} at {last.get('ts')}")

    if state:
        click.echo(f"🪣 Buckets: {', '.join(state.buckets) or 'none'}")
        click.echo(f"👤 Service account: {state.service_account_email or 'none'}")
        if state.instance:
            click.echo(f"💻 Instance: {state.instance['name']} ({state.instance['zone']})")
        click.echo(f"🔑 Bindings: {len(state.bindings)}")
    else:
        click.echo("No recorded lab resources")

    if live:
        click.echo("\n🔍 Existing resources:")
        if not result["live"]:
            click.echo("  none")
        for entry in result["live"]:
            click.echo(f"  • {entry['kind']}: {entry['identifier']}")


@main.command("logs")
@click.option("--follow", "-f", is_flag=True, help="Follow events in real-time")
@click.option("--format", "output_format", type=click.Choice(["json", "human"]), default="human", help="Output format")
@click.pass_context
def logs_cmd(ctx, follow: bool, output_format: str):
    """
    Show the event log for the active project.
    """
    try:
        project_id = resolve_project(_gcloud(ctx))
    except PrerequisiteError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    def format_event(event):
        if output_format == "json":
            return json.dumps(event)
        data = event.get("data", {})
        detail = data.get("id") or data.get("step") or data.get("reason") or ""
        line = f"[{event.get('ts', 'unknown')}] {event.get('type', 'unknown')}"
        return f"{line}: {detail}" if detail else line

    if follow:
        try:
            for event in tail_events(project_id, follow=True):
                print(format_event(event), flush=True)
        except KeyboardInterrupt:
            click.echo("\nLog streaming stopped", err=True)
    else:
        events = read_events(project_id)
        if not events:
            click.echo("No events recorded")
        for event in events:
            print(format_event(event))


@main.command("roles")
@click.argument("role", required=False)
@click.option("--permission", help="Show roles granting this permission")
@click.option("--policies", is_flag=True, help="Show the example policy documents")
def roles_cmd(role: Optional[str], permission: Optional[str], policies: bool):
    """
    Show the reference roles and example policies used in the lab.
    """
    if policies:
        for entry in load_reference()["policies"]:
            click.echo(f"# {entry['name']}: {entry.get('description', '')}")
            click.echo(json.dumps(entry["policy"], indent=2))
        return

    if permission:
        granting = roles_granting(permission)
        if not granting:
            click.echo(f"No reference role grants {permission}")
            return
        for name in granting:
            click.echo(f"{name}  ({role_title(name)})")
        return

    if role:
        try:
            permissions = permissions_for(role)
        except KeyError as e:
            click.echo(str(e.args[0]), err=True)
            sys.exit(1)
        click.echo(f"{role}  ({role_title(role)})")
        for perm in permissions:
            click.echo(f"  • {perm}")
        return

    for name in list_roles():
        click.echo(f"{name}  ({role_title(name)})")


if __name__ == "__main__":
    main()
