"""create_release: resolve, version, stage packages, create a release, then deploy it."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from octopus_client.client import OctopusClient
from octopus_client.config import ClientConfiguration
from octopus_client.errors import (
    MissingParameterError,
    NotFoundError,
    OctopusError,
    PollTimeoutExceeded,
    ScheduleExpiredError,
    UnexpectedResponseError,
    VersionUnavailableError,
)
from octopus_client.models import (
    Deployment,
    DeploymentRequest,
    DeploymentResult,
    Environment,
    Project,
    Release,
    ReleaseOutcome,
    ReleaseSpec,
    SelectedPackage,
    TaskWaitResult,
    Tenant,
)
from octopus_client.operations.packages import PackageStager
from octopus_client.operations.task_polling import Clock, TaskPoller
from octopus_client.repositories import SpaceRepository
from octopus_client.resolver import resolve_in
from octopus_client.utils import format_iso_timestamp, same_name
from octopus_client.validation import validate_deployment_request, validate_release_spec

log = structlog.get_logger()


@dataclass
class _Target:
    """One (environment, tenant) pair; ``error`` is set when it could not be resolved."""

    environment: str
    tenant: str | None = None
    environment_resource: Environment | None = None
    tenant_resource: Tenant | None = None
    error: OctopusError | None = None


class ReleaseOrchestrator:
    """Runs one release-creation-and-deployment request against a space.

    Project, channel, version and package resolution stop at the first error and
    nothing is created. Once the release exists, every deployment target gets its
    own result; one failed target never aborts its siblings.
    """

    def __init__(
        self,
        space: SpaceRepository,
        *,
        config: ClientConfiguration,
        clock: Clock | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._space = space
        self._config = config
        self._clock = clock
        self._cancel_event = cancel_event

    def _stage(self, stage: str, **context: Any) -> None:
        log.info("release_stage", stage=stage, space=self._space.space_id, **context)

    async def run(self, spec: ReleaseSpec, deployment: DeploymentRequest | None = None) -> ReleaseOutcome:
        """Create the release and, when ``deployment`` is given, deploy it.

        Raises:
            ValueError: If the release spec or deployment request is invalid.
            NotFoundError: If the project or channel cannot be found.
            VersionUnavailableError: If no version was given and the server proposes none.
            PackageResolutionError: If package versions cannot be resolved.
            ReleaseConflictError: If the version already exists; nothing is deployed.
        """
        validate_release_spec(spec)
        if deployment is not None:
            validate_deployment_request(deployment)

        self._stage("ResolvingProject", project=spec.project)
        project = await resolve_in(self._space.projects, spec.project)

        self._stage("ResolvingChannel", project=project.id, channel=spec.channel)
        if spec.channel:
            channel = await resolve_in(self._space.channels.for_project(project), spec.channel)
        else:
            channel = await self._space.channels.default_for_project(project)

        self._stage("DeterminingVersion", project=project.id, channel=channel.id)
        process = await self._space.deployment_processes.for_project(project)
        template = await self._space.deployment_processes.template(process, channel)
        version = spec.version or template.next_version_increment
        if not version:
            msg = f"The server did not propose a next release version for {project.name} / {channel.name}."
            raise VersionUnavailableError(msg)

        stager = PackageStager(self._space)
        selected: list[SelectedPackage] = []
        if template.packages:
            self._stage("StagingPackages", packages=len(template.packages))
            selected = await stager.stage(template, spec)

        self._stage("CreatingRelease", project=project.id, channel=channel.id, version=version)
        release = await self._space.releases.create(
            {
                "ProjectId": project.id,
                "ChannelId": channel.id,
                "Version": version,
                "ReleaseNotes": spec.release_notes,
                "SelectedPackages": [p.model_dump(by_alias=True, exclude_none=True) for p in selected],
            }
        )
        self._stage("ReleaseCreated", release=release.id, version=release.version)

        outcome = ReleaseOutcome(
            project=project,
            channel=channel,
            release=release,
            uploaded_packages=stager.uploaded,
        )
        if deployment is not None:
            outcome.deployments = await self.deploy(project, release, deployment)
        return outcome

    async def deploy(self, project: Project, release: Release, request: DeploymentRequest) -> list[DeploymentResult]:
        """Deploy an existing release to every requested target, in request order."""
        targets = await self._resolve_targets(project, request)
        machine_ids, machine_error = await self._resolve_machines(request)

        created = await asyncio.gather(
            *(self._create_deployment(release, target, request, machine_ids, machine_error) for target in targets),
            return_exceptions=True,
        )
        results: list[DeploymentResult] = []
        for target, result in zip(targets, created, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                log.error(
                    "deployment_creation_failed",
                    environment=target.environment,
                    tenant=target.tenant,
                    error=str(result),
                )
                results.append(_failed(target, result))
            else:
                results.append(result)

        if request.wait_for_completion:
            results = await self._wait_all(results, request)
        return results

    async def _resolve_targets(self, project: Project, request: DeploymentRequest) -> list[_Target]:
        environments: list[_Target] = []
        for name in request.environments:
            try:
                env = await self._space.resolver.resolve("Environments", name, Environment)
            except OctopusError as exc:
                log.warning("environment_unresolved", environment=name, error=str(exc))
                environments.append(_Target(environment=name, error=exc))
            else:
                environments.append(_Target(environment=name, environment_resource=env))

        if not request.tenants and not request.tenant_tags:
            return environments

        tenants: list[tuple[str, Tenant | None, OctopusError | None]] = []
        seen: set[str] = set()
        for name in request.tenants:
            try:
                tenant = await self._space.resolver.resolve("Tenants", name, Tenant)
            except OctopusError as exc:
                tenants.append((name, None, exc))
                continue
            if tenant.id not in seen:
                seen.add(str(tenant.id))
                tenants.append((tenant.name, tenant, None))

        tag_error: OctopusError | None = None
        if request.tenant_tags:
            try:
                tagged = await self._space.tenants.list_by_tags(request.tenant_tags, project.id)
            except OctopusError as exc:
                log.warning("tenant_tag_query_failed", tags=request.tenant_tags, error=str(exc))
                tagged = []
                tag_error = exc
            if not tagged and tag_error is None:
                msg = f"No tenants match the tags {', '.join(request.tenant_tags)}."
                tag_error = NotFoundError(msg)
            for tenant in tagged:
                if tenant.id not in seen:
                    seen.add(str(tenant.id))
                    tenants.append((tenant.name, tenant, None))

        targets: list[_Target] = []
        for env in environments:
            if tag_error is not None:
                targets.append(_Target(environment=env.environment, error=env.error or tag_error))
            for name, tenant, error in tenants:
                targets.append(
                    _Target(
                        environment=env.environment,
                        tenant=name,
                        environment_resource=env.environment_resource,
                        tenant_resource=tenant,
                        error=env.error or error,
                    )
                )
        return targets

    async def _resolve_machines(self, request: DeploymentRequest) -> tuple[dict[str, list[str]], OctopusError | None]:
        ids: dict[str, list[str]] = {"specific": [], "excluded": []}
        for key, names in (("specific", request.specific_machines), ("excluded", request.excluded_machines)):
            for name in names:
                try:
                    machine = await self._space.resolver.resolve("Machines", name)
                except OctopusError as exc:
                    return ids, exc
                ids[key].append(str(machine.id))
        return ids, None

    async def _create_deployment(
        self,
        release: Release,
        target: _Target,
        request: DeploymentRequest,
        machine_ids: dict[str, list[str]],
        machine_error: OctopusError | None,
    ) -> DeploymentResult:
        if target.error is not None:
            return _failed(target, target.error)
        if machine_error is not None:
            return _failed(target, machine_error)
        environment = target.environment_resource
        tenant = target.tenant_resource
        if environment is None or environment.id is None:
            msg = f"Environment {target.environment!r} was resolved without an Id."
            raise UnexpectedResponseError(msg)

        skip_actions: list[str] = []
        form_values: dict[str, str] = {}
        if request.skip_steps or request.variables:
            preview = await self._space.deployments.preview(
                release, environment.id, tenant.id if tenant is not None else None
            )
            skip_actions = _skip_action_ids(preview, request.skip_steps)
            form_values = _form_values(preview, request.variables)

        body: dict[str, Any] = {
            "ReleaseId": release.id,
            "EnvironmentId": environment.id,
            "TenantId": tenant.id if tenant is not None else None,
            "QueueTime": format_iso_timestamp(request.queue_time) if request.queue_time else None,
            "QueueTimeExpiry": (
                format_iso_timestamp(request.queue_time_expiry) if request.queue_time_expiry else None
            ),
            "ForcePackageDownload": request.force_package_download,
            "ForcePackageRedeployment": request.force_package_redeployment,
            "UseGuidedFailure": request.guided_failure,
            "SkipActions": skip_actions,
            "SpecificMachineIds": machine_ids["specific"],
            "ExcludedMachineIds": machine_ids["excluded"],
            "FormValues": form_values,
            "Comments": request.comments,
        }
        created: Deployment = await self._space.deployments.create({k: v for k, v in body.items() if v is not None})
        log.info(
            "deployment_created",
            deployment=created.id,
            environment=target.environment,
            tenant=target.tenant,
            task_id=created.task_id,
        )
        return DeploymentResult(
            environment=target.environment,
            environment_id=environment.id,
            tenant=target.tenant,
            tenant_id=tenant.id if tenant is not None else None,
            deployment=created,
        )

    async def _wait_all(self, results: list[DeploymentResult], request: DeploymentRequest) -> list[DeploymentResult]:
        poller = TaskPoller(
            self._space.tasks,
            interval_seconds=request.poll_interval_seconds or self._config.poll_interval_seconds,
            timeout_seconds=request.poll_timeout_seconds or self._config.poll_timeout_seconds,
            clock=self._clock,
            cancel_event=self._cancel_event,
        )
        waiting = [r for r in results if r.deployment is not None and r.deployment.task_id]
        self._stage("Polling", tasks=len(waiting))
        outcomes = await asyncio.gather(
            *(poller.wait(str(r.deployment.task_id)) for r in waiting if r.deployment is not None),
            return_exceptions=True,
        )
        for result, outcome in zip(waiting, outcomes, strict=True):
            task_id = str(result.deployment.task_id) if result.deployment else ""
            if isinstance(outcome, TaskWaitResult):
                result.task = outcome
                if not outcome.succeeded:
                    result.error = outcome.error_message or f"Task {task_id} finished as {outcome.outcome}."
                    result.error_type = outcome.outcome
            elif isinstance(outcome, ScheduleExpiredError):
                result.task = TaskWaitResult(
                    task_id=task_id, state="Queued", outcome="ScheduleExpired", error_message=str(outcome)
                )
                result.error, result.error_type = str(outcome), type(outcome).__name__
            elif isinstance(outcome, PollTimeoutExceeded):
                result.task = TaskWaitResult(
                    task_id=task_id, state="Unknown", outcome="PollTimeoutExceeded", error_message=str(outcome)
                )
                result.error, result.error_type = str(outcome), type(outcome).__name__
            elif isinstance(outcome, Exception):
                log.error("task_wait_failed", task_id=task_id, error=str(outcome))
                result.error, result.error_type = str(outcome), type(outcome).__name__
            else:
                raise outcome
        return results


def _failed(target: _Target, error: Exception) -> DeploymentResult:
    return DeploymentResult(
        environment=target.environment,
        environment_id=target.environment_resource.id if target.environment_resource else None,
        tenant=target.tenant,
        tenant_id=target.tenant_resource.id if target.tenant_resource else None,
        error=str(error),
        error_type=type(error).__name__,
    )


def _skip_action_ids(preview: dict[str, Any], step_names: list[str]) -> list[str]:
    """Map step or action names to the action ids the preview says will run."""
    steps = preview.get("StepsToExecute") or []
    ids: list[str] = []
    for name in step_names:
        matches = [
            s["ActionId"]
            for s in steps
            if s.get("ActionId") and (same_name(s.get("ActionName"), name) or same_name(s.get("ActionId"), name))
        ]
        if not matches:
            msg = f"Step {name!r} is not part of this deployment."
            raise NotFoundError(msg)
        ids.extend(matches)
    return ids


def _form_values(preview: dict[str, Any], variables: dict[str, str]) -> dict[str, str]:
    """Map prompted variable names onto preview form element ids."""
    form = preview.get("Form") or {}
    defaults: dict[str, Any] = form.get("Values") or {}
    lookup = {k.casefold(): v for k, v in variables.items()}
    values: dict[str, str] = {}
    missing: list[str] = []
    for element in form.get("Elements") or []:
        element_id = element.get("Name")
        control = element.get("Control") or {}
        name = control.get("Name")
        if not element_id or not name:
            continue
        if name.casefold() in lookup:
            values[element_id] = lookup.pop(name.casefold())
        elif control.get("Required") and not defaults.get(element_id):
            missing.append(name)
    if missing:
        msg = f"Prompted variables need values: {', '.join(missing)}."
        raise MissingParameterError(msg)
    for name in lookup:
        log.warning("prompted_variable_unused", variable=name)
    return values


async def create_release(
    client: OctopusClient,
    spec: ReleaseSpec,
    deployment: DeploymentRequest | None = None,
    *,
    space: str | None = None,
    clock: Clock | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ReleaseOutcome:
    """Create a release in ``space`` (default: the client's space) and optionally deploy it."""
    repository = await client.for_space(space)
    orchestrator = ReleaseOrchestrator(repository, config=client.config, clock=clock, cancel_event=cancel_event)
    return await orchestrator.run(spec, deployment)
