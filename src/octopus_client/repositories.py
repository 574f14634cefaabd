"""Collection repositories for the system level and for one space."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import aclosing
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from octopus_client.clients.api_client import ApiClient
from octopus_client.errors import (
    ConflictError,
    InvalidOperationError,
    ReleaseConflictError,
    UnexpectedResponseError,
    ValidationError,
)
from octopus_client.links import expand, require_link
from octopus_client.models import (
    Channel,
    Deployment,
    DeploymentProcess,
    Environment,
    Feed,
    NamedResource,
    PackageVersion,
    Project,
    Release,
    ReleaseTemplate,
    Resource,
    ResourceCollection,
    Space,
    SpaceRootDocument,
    Task,
    Tenant,
    User,
)
from octopus_client.repository import ResourceRepository
from octopus_client.resolver import NamedEntityResolver

log = structlog.get_logger()


class UserRepository(ResourceRepository[User]):
    async def get_current(self) -> User:
        href = require_link(self._links, "CurrentUser", self._owner)
        return self._parse(await self._api.get(href))


class TaskRepository(ResourceRepository[Task]):
    async def cancel(self, task: Task) -> Task:
        """Ask the server to cancel a task; returns the task as the server reports it afterwards."""
        href = task.links.get("Cancel")
        if not href:
            self_link = task.links.get("Self")
            if not self_link:
                msg = f"Cannot cancel task {task.id or '<unknown>'}: it carries no links."
                raise InvalidOperationError(msg)
            href = f"{self_link.rstrip('/')}/cancel"
        payload = await self._api.post(href)
        log.info("task_cancel_requested", task_id=task.id)
        return self._parse(payload) if isinstance(payload, dict) else task


class TenantRepository(ResourceRepository[Tenant]):
    async def list_by_tags(self, tags: Sequence[str], project_id: str | None = None) -> list[Tenant]:
        """Every tenant matching the canonical tag names, in server order."""
        return [tenant async for tenant in self.list_all(tags=list(tags), projectId=project_id)]


class ChannelRepository(ResourceRepository[Channel]):
    def for_project(self, project: Project) -> ResourceRepository[Channel]:
        return ResourceRepository(self._api, project.links, "Channels", Channel, owner=f"Project {project.id}")

    async def default_for_project(self, project: Project) -> Channel:
        async with aclosing(self.for_project(project).list_all()) as channels:
            async for channel in channels:
                if channel.is_default:
                    return channel
        msg = f"Project {project.name or project.id} has no default channel."
        raise UnexpectedResponseError(msg)

    async def create_for_project(self, project: Project, body: Mapping[str, Any]) -> Channel:
        payload = {"ProjectId": project.id, "SpaceId": project.space_id, **body}
        return await self.create(payload)


class DeploymentProcessRepository(ResourceRepository[DeploymentProcess]):
    async def for_project(self, project: Project) -> DeploymentProcess:
        href = project.links.get("DeploymentProcess")
        if href:
            return await self.get(href)
        if not project.deployment_process_id:
            msg = f"Project {project.id} has neither a DeploymentProcess link nor a DeploymentProcessId."
            raise UnexpectedResponseError(msg)
        return await self.get(project.deployment_process_id)

    async def save_to_project(self, project: Project, process: DeploymentProcess) -> DeploymentProcess:
        if process.project_id and project.id and process.project_id != project.id:
            msg = f"Deployment process {process.id} belongs to {process.project_id}, not {project.id}."
            raise InvalidOperationError(msg)
        return await self.modify(process)

    async def template(self, process: DeploymentProcess, channel: Channel) -> ReleaseTemplate:
        """The release template: next version and the package references of each step."""
        template = require_link(process.links, "Template", f"DeploymentProcess {process.id}")
        href = expand(template, {"channel": channel.id})
        payload = await self._api.get(href)
        try:
            return ReleaseTemplate.model_validate(payload)
        except PydanticValidationError as exc:
            msg = f"Release template for {process.id} could not be parsed."
            raise UnexpectedResponseError(msg) from exc


class FeedRepository(ResourceRepository[Feed]):
    async def search_versions(
        self,
        feed: Feed,
        package_id: str,
        *,
        version_range: str | None = None,
        take: int = 1,
        include_prerelease: bool = True,
    ) -> list[PackageVersion]:
        template = require_link(feed.links, "SearchPackageVersionsTemplate", f"Feed {feed.id}")
        href = expand(
            template,
            {
                "packageId": package_id,
                "versionRange": version_range,
                "take": take,
                "includePreRelease": include_prerelease,
            },
        )
        payload = await self._api.get(href)
        try:
            page = ResourceCollection[PackageVersion].model_validate(payload)
        except PydanticValidationError as exc:
            msg = f"Package search on feed {feed.id} returned an unexpected document."
            raise UnexpectedResponseError(msg) from exc
        return page.items

    async def latest_version(self, feed: Feed, package_id: str) -> str | None:
        versions = await self.search_versions(feed, package_id, take=1)
        return versions[0].version if versions else None

    async def has_version(self, feed: Feed, package_id: str, version: str) -> bool:
        versions = await self.search_versions(feed, package_id, version_range=f"[{version}]", take=1)
        return any(v.version == version for v in versions)


class PackageRepository:
    """Uploads to the built-in package feed."""

    def __init__(self, api: ApiClient, links: Mapping[str, str], owner: str) -> None:
        self._api = api
        self._links = links
        self._owner = owner

    async def upload(
        self,
        path: Path,
        *,
        overwrite_mode: str = "IgnoreIfExists",
    ) -> dict[str, Any]:
        template = require_link(self._links, "PackageUpload", self._owner)
        href = expand(template, {"overwriteMode": overwrite_mode})
        payload = await self._api.upload(href, path.name, path.read_bytes())
        log.info("package_uploaded", file=path.name, overwrite_mode=overwrite_mode)
        return payload if isinstance(payload, dict) else {}


class ReleaseRepository(ResourceRepository[Release]):
    async def create(self, body: Release | Mapping[str, Any]) -> Release:
        """Create a release; a duplicate version surfaces as ReleaseConflictError."""
        try:
            return await super().create(body)
        except ConflictError as exc:
            raise ReleaseConflictError(
                exc.message, status_code=exc.status_code, errors=exc.errors, details=exc.details
            ) from exc
        except ValidationError as exc:
            if any("already exists" in e.lower() for e in [exc.message, *exc.errors]):
                raise ReleaseConflictError(
                    exc.message, status_code=exc.status_code, errors=exc.errors, details=exc.details
                ) from exc
            raise


class DeploymentRepository(ResourceRepository[Deployment]):
    async def preview(self, release: Release, environment_id: str, tenant_id: str | None = None) -> dict[str, Any]:
        """Deployment preview for one target, including the prompted-variable form."""
        template = require_link(release.links, "DeploymentPreview", f"Release {release.id}")
        # Older servers declare {tenant} as a required segment even for untenanted previews
        tenant = tenant_id if tenant_id is not None else ("" if "{tenant}" in template else None)
        href = expand(template, {"environment": environment_id, "tenant": tenant})
        payload = await self._api.get(href)
        return payload if isinstance(payload, dict) else {}


class SystemRepository:
    """Collections advertised by the server root document."""

    def __init__(self, api: ApiClient, links: Mapping[str, str]) -> None:
        owner = "server root"
        self.links = links
        self.spaces = ResourceRepository(api, links, "Spaces", Space, owner=owner)
        self.users = UserRepository(api, links, "Users", User, owner=owner)
        self.tasks = TaskRepository(api, links, "Tasks", Task, owner=owner)
        self.resolver = NamedEntityResolver(api, links, owner=owner)


class SpaceRepository:
    """Collections advertised by one space root document."""

    def __init__(self, api: ApiClient, root: SpaceRootDocument) -> None:
        owner = f"Space {root.space_id}"
        links = root.links
        self.space_id = root.space_id
        self.links = links
        self.projects = ResourceRepository(api, links, "Projects", Project, owner=owner)
        self.project_groups = ResourceRepository(api, links, "ProjectGroups", NamedResource, owner=owner)
        self.environments = ResourceRepository(api, links, "Environments", Environment, owner=owner)
        self.tenants = TenantRepository(api, links, "Tenants", Tenant, owner=owner)
        self.tag_sets = ResourceRepository(api, links, "TagSets", NamedResource, owner=owner)
        self.channels = ChannelRepository(api, links, "Channels", Channel, owner=owner)
        self.releases = ReleaseRepository(api, links, "Releases", Release, owner=owner)
        self.deployments = DeploymentRepository(api, links, "Deployments", Deployment, owner=owner)
        self.tasks = TaskRepository(api, links, "Tasks", Task, owner=owner)
        self.feeds = FeedRepository(api, links, "Feeds", Feed, owner=owner)
        self.deployment_processes = DeploymentProcessRepository(
            api, links, "DeploymentProcesses", DeploymentProcess, owner=owner
        )
        self.variables = ResourceRepository(api, links, "Variables", Resource, owner=owner)
        self.lifecycles = ResourceRepository(api, links, "Lifecycles", NamedResource, owner=owner)
        self.machines = ResourceRepository(api, links, "Machines", NamedResource, owner=owner)
        self.packages = PackageRepository(api, links, owner=owner)
        self.resolver = NamedEntityResolver(api, links, owner=owner)
