"""Input validation for release and deployment requests."""

from __future__ import annotations

import re
from datetime import UTC, datetime

from octopus_client.models import DeploymentRequest, ReleaseSpec

# Semantic-ish version: digits separated by dots, optional pre-release/build suffix
_VERSION_RE = re.compile(r"^\d+(\.\d+){0,3}([-+][0-9A-Za-z.\-+]+)?$")

# Canonical tenant tag: "<tag set>/<tag>"
_TENANT_TAG_RE = re.compile(r"^[^/]+/[^/]+$")


def validate_version(version: str | None) -> None:
    """Validate an explicit release or package version."""
    if version is None:
        return
    if not _VERSION_RE.match(version):
        msg = f"Invalid version: {version!r}. Expected a dotted numeric version such as '1.2.3' or '1.2.3-beta.1'."
        raise ValueError(msg)


def validate_tenant_tag(tag: str) -> None:
    if not _TENANT_TAG_RE.match(tag):
        msg = f"Invalid tenant tag: {tag!r}. Must be a canonical tag name of the form 'TagSet/Tag'."
        raise ValueError(msg)


def validate_release_spec(spec: ReleaseSpec) -> None:
    """Validate a release spec before any server call is made."""
    if not spec.project.strip():
        msg = "A project name or id is required."
        raise ValueError(msg)
    validate_version(spec.version)
    validate_version(spec.default_package_version)
    for package_version in spec.package_versions.values():
        validate_version(package_version)
    if spec.packages_folder is not None and not spec.packages_folder.is_dir():
        msg = f"Packages folder does not exist: {spec.packages_folder}"
        raise ValueError(msg)


def validate_deployment_request(request: DeploymentRequest) -> None:
    """Validate a deployment request before any server call is made."""
    if not request.environments:
        msg = "At least one environment is required to deploy."
        raise ValueError(msg)
    blank = [e for e in request.environments if not e.strip()]
    if blank:
        msg = "Environment names must not be blank."
        raise ValueError(msg)
    for tag in request.tenant_tags:
        validate_tenant_tag(tag)

    queue_time = request.queue_time
    expiry = request.queue_time_expiry
    if expiry is not None:
        if queue_time is None:
            msg = "queue_time_expiry requires queue_time to be set."
            raise ValueError(msg)
        if _aware(expiry) <= _aware(queue_time):
            msg = (
                f"queue_time_expiry ({expiry.isoformat()}) must be later than "
                f"queue_time ({queue_time.isoformat()})."
            )
            raise ValueError(msg)

    for name, value in (
        ("poll_interval_seconds", request.poll_interval_seconds),
        ("poll_timeout_seconds", request.poll_timeout_seconds),
    ):
        if value is not None and value <= 0:
            msg = f"Invalid {name}: {value!r}. Must be positive."
            raise ValueError(msg)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
