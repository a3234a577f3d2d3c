"""
Resource sweep utilities for finding lab resources.
"""

import logging
from typing import List, Optional

from .. import resources
from ..config import LabSettings, service_account_email
from ..gcloud import GCloud
from ..ids import is_lab_bucket
from ..labels import is_lab_resource
from ..state import LabState
from .models import FoundResource

logger = logging.getLogger(__name__)


def find_lab_buckets(
    gcloud: GCloud,
    settings: LabSettings,
    project_id: str,
    state: Optional[LabState] = None,
) -> List[FoundResource]:
    """
    Find the buckets cleanup should delete.

    Exact names recorded in state are used when available. Without state,
    project buckets are listed and a bucket qualifies only if its name
    matches the generated pattern exactly and it carries the lab label.

    Args:
        gcloud: gcloud client
        settings: Lab settings (marker)
        project_id: Project ID
        state: Recorded lab state, if any

    Returns:
        List of found buckets
    """
    if state is not None and state.buckets:
        return [
            FoundResource(
                kind="bucket",
                identifier=name,
                reason="Recorded in lab state",
            )
            for name in state.buckets
        ]

    found = []
    for bucket in resources.list_buckets(gcloud, project_id):
        name = bucket["name"]
        labels = bucket["labels"]

        if not is_lab_bucket(name, project_id, settings.bucket_marker):
            continue
        if not is_lab_resource(labels, settings.bucket_marker):
            logger.info("Skipping bucket %s: name matches but lab label is missing", name)
            continue

        found.append(FoundResource(
            kind="bucket",
            identifier=name,
            labels=labels,
            reason=f"Name matches {project_id}-{settings.bucket_marker}-<timestamp> and labeled lab={settings.bucket_marker}",
        ))

    return found


def list_lab_resources(
    gcloud: GCloud,
    settings: LabSettings,
    project_id: str,
    zone: str,
    state: Optional[LabState] = None,
) -> List[FoundResource]:
    """
    List the lab resources that currently exist in the project.

    Args:
        gcloud: gcloud client
        settings: Lab settings
        project_id: Project ID
        zone: Zone of the lab instance
        state: Recorded lab state, if any

    Returns:
        Existing instance, service account and buckets
    """
    found_resources = []

    instance_zone = (state.instance or {}).get("zone", zone) if state else zone
    if resources.instance_exists(gcloud, settings.vm_name, instance_zone):
        found_resources.append(FoundResource(
            kind="instance",
            identifier=settings.vm_name,
            zone=instance_zone,
            reason="Lab instance name",
        ))

    email = service_account_email(settings.service_account_name, project_id)
    if resources.service_account_exists(gcloud, email):
        found_resources.append(FoundResource(
            kind="service_account",
            identifier=email,
            reason="Lab service account name",
        ))

    for bucket in find_lab_buckets(gcloud, settings, project_id, state):
        if resources.bucket_exists(gcloud, bucket.identifier):
            found_resources.append(bucket)

    return found_resources
