"""Pydantic v2 models for wire records, root documents, resources, and orchestration results."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal

# --- Wire records ---


class RequestDetails(BaseModel):
    """A single request handed to the transport."""

    method: Literal["GET", "POST", "PUT", "DELETE"]
    url: str
    query: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    # Multipart uploads: field name -> (file name, content)
    files: dict[str, tuple[str, bytes]] | None = None


class ResponseDetails(BaseModel):
    """A transport response; ``body`` holds the raw bytes."""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class _ServerModel(BaseModel):
    """Base for documents exchanged with the server in PascalCase."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="allow")


class ErrorResponseDetails(_ServerModel):
    """Parsed body of a non-2xx response."""

    error_message: str = ""
    errors: list[str] = Field(default_factory=list)
    status_code: int | None = None


# --- Root documents ---


class ServerInformation(_ServerModel):
    """The server root document: version plus link templates."""

    version: str = ""
    application: str | None = None
    api_version: str | None = None
    links: dict[str, str] = Field(default_factory=dict)


class SpaceRootDocument(_ServerModel):
    """Root link document scoped to a single space."""

    space_id: str = ""
    links: dict[str, str] = Field(default_factory=dict)


# --- Resources ---


class Resource(_ServerModel):
    """Base resource shape; resource-specific fields are kept as extras."""

    id: str | None = None
    links: dict[str, str] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Serialise back to the server's field names, including opaque extras."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class NamedResource(Resource):
    name: str = ""


T = TypeVar("T", bound=Resource)


class ResourceCollection(_ServerModel, Generic[T]):
    """One page of a server collection; ``items`` keeps server order."""

    items: list[T] = Field(default_factory=list)
    items_per_page: int = 0
    total_results: int = 0
    links: dict[str, str] = Field(default_factory=dict)

    @property
    def next_page(self) -> str | None:
        return self.links.get("Page.Next") or None


class Space(NamedResource):
    is_default: bool = False
    task_queue_stopped: bool = False


class User(NamedResource):
    username: str = ""
    display_name: str = ""


class Project(NamedResource):
    space_id: str | None = None
    deployment_process_id: str | None = None
    lifecycle_id: str | None = None
    variable_set_id: str | None = None
    tenanted_deployment_mode: str | None = None


class Channel(NamedResource):
    project_id: str | None = None
    lifecycle_id: str | None = None
    is_default: bool = False


class Environment(NamedResource):
    pass


class Tenant(NamedResource):
    tenant_tags: list[str] = Field(default_factory=list)
    project_environments: dict[str, list[str]] = Field(default_factory=dict)


class Feed(NamedResource):
    feed_type: str | None = None


class DeploymentProcess(Resource):
    project_id: str | None = None
    steps: list[dict[str, Any]] = Field(default_factory=list)


class SelectedPackage(_ServerModel):
    action_name: str
    package_reference_name: str | None = None
    version: str


class Release(Resource):
    version: str = ""
    project_id: str | None = None
    channel_id: str | None = None
    release_notes: str | None = None
    selected_packages: list[SelectedPackage] = Field(default_factory=list)


# Queued, Executing and Cancelling are the non-terminal task states
TERMINAL_TASK_STATES: frozenset[str] = frozenset({"Success", "Failed", "Canceled", "TimedOut"})


class Task(NamedResource):
    """Server-side unit of work, e.g. one deployment execution."""

    state: str = "Queued"
    description: str | None = None
    queue_time: datetime | None = None
    queue_time_expiry: datetime | None = None
    start_time: datetime | None = None
    completed_time: datetime | None = None
    error_message: str | None = None
    is_completed: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TASK_STATES


class Deployment(NamedResource):
    release_id: str | None = None
    environment_id: str | None = None
    tenant_id: str | None = None
    task_id: str | None = None
    queue_time: datetime | None = None
    queue_time_expiry: datetime | None = None


class PackageVersion(Resource):
    package_id: str | None = None
    version: str = ""


class TemplatePackage(_ServerModel):
    """A package reference from a deployment process template."""

    action_name: str
    package_reference_name: str | None = None
    package_id: str
    feed_id: str
    version_selected_last_release: str | None = None
    is_resolvable: bool = True


class ReleaseTemplate(_ServerModel):
    next_version_increment: str | None = None
    packages: list[TemplatePackage] = Field(default_factory=list)


# --- Orchestration inputs ---


class PackageIdentity(BaseModel):
    """A package id plus version, e.g. parsed from ``Hello.1.0.0.zip``."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: str
    path: Path | None = None


class ReleaseSpec(BaseModel):
    """What release to create."""

    project: str
    channel: str | None = None
    version: str | None = None
    release_notes: str | None = None
    # Package id or "<action>:<reference>" -> version
    package_versions: dict[str, str] = Field(default_factory=dict)
    packages: list[PackageIdentity] = Field(default_factory=list)
    packages_folder: Path | None = None
    default_package_version: str | None = None


class DeploymentRequest(BaseModel):
    """Where and how to deploy a release."""

    environments: list[str]
    tenants: list[str] = Field(default_factory=list)
    tenant_tags: list[str] = Field(default_factory=list)
    queue_time: datetime | None = None
    queue_time_expiry: datetime | None = None
    force_package_download: bool = False
    force_package_redeployment: bool = False
    guided_failure: bool | None = None
    skip_steps: list[str] = Field(default_factory=list)
    specific_machines: list[str] = Field(default_factory=list)
    excluded_machines: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    comments: str | None = None
    wait_for_completion: bool = False
    poll_interval_seconds: float | None = None
    poll_timeout_seconds: float | None = None


# --- Orchestration results ---


class TaskWaitResult(BaseModel):
    """Outcome of waiting on one task.

    ``outcome`` is the terminal task state (Success, Failed, Canceled, TimedOut),
    or one of ScheduleExpired, PollTimeoutExceeded, CancelledByCaller when
    waiting stopped before the task finished.
    """

    task_id: str
    state: str
    outcome: str
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "Success"

    @property
    def cancelled(self) -> bool:
        return self.outcome == "CancelledByCaller"


class DeploymentResult(BaseModel):
    """Per-target outcome of the deployment stage."""

    environment: str
    environment_id: str | None = None
    tenant: str | None = None
    tenant_id: str | None = None
    deployment: Deployment | None = None
    task: TaskWaitResult | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def created(self) -> bool:
        return self.deployment is not None

    @property
    def succeeded(self) -> bool:
        return self.created and self.error is None and (self.task is None or self.task.succeeded)


class ReleaseOutcome(BaseModel):
    """Result of a release-creation-and-deployment run."""

    project: Project
    channel: Channel
    release: Release
    uploaded_packages: list[PackageIdentity] = Field(default_factory=list)
    deployments: list[DeploymentResult] = Field(default_factory=list)

    @property
    def failed_deployments(self) -> list[DeploymentResult]:
        return [d for d in self.deployments if not d.succeeded]
