"""Package staging: match local packages and requested versions to a release template."""

from __future__ import annotations

import re
from pathlib import Path

import structlog

from octopus_client.errors import PackageResolutionError
from octopus_client.models import Feed, PackageIdentity, ReleaseSpec, ReleaseTemplate, SelectedPackage, TemplatePackage
from octopus_client.repositories import SpaceRepository

log = structlog.get_logger()

_PACKAGE_FILE_RE = re.compile(
    r"^(?P<id>.+?)\.(?P<version>\d+(?:\.\d+)*(?:[-+][0-9A-Za-z.\-+]*)?)"
    r"\.(?P<ext>zip|nupkg|tar\.gz|tar\.bz2|tgz|tar|jar|war|ear)$",
    re.IGNORECASE,
)

BUILT_IN_FEED_TYPE = "BuiltIn"


def parse_package_file_name(file_name: str) -> PackageIdentity | None:
    """Split ``<id>.<version>.<ext>`` into a PackageIdentity; None if the name does not fit."""
    match = _PACKAGE_FILE_RE.match(file_name)
    if match is None:
        return None
    return PackageIdentity(id=match.group("id"), version=match.group("version"))


def scan_packages_folder(folder: Path) -> list[PackageIdentity]:
    """Every package file directly inside ``folder``, sorted by file name."""
    found: list[PackageIdentity] = []
    for path in sorted(folder.iterdir()):
        if not path.is_file():
            continue
        identity = parse_package_file_name(path.name)
        if identity is None:
            log.debug("package_file_skipped", file=path.name)
            continue
        found.append(identity.model_copy(update={"path": path}))
    return found


class PackageStager:
    """Chooses a version for every package reference in a release template.

    Explicit versions win over local packages, which win over the default version;
    references with none of these take the latest version on their feed. Local
    package files whose version is missing from the built-in feed are uploaded
    first. Every unresolvable reference is reported together.
    """

    def __init__(self, space: SpaceRepository) -> None:
        self._space = space
        self._feeds: dict[str, Feed] = {}
        self.uploaded: list[PackageIdentity] = []

    async def _feed(self, feed_id: str) -> Feed:
        if feed_id not in self._feeds:
            self._feeds[feed_id] = await self._space.feeds.get(feed_id)
        return self._feeds[feed_id]

    @staticmethod
    def _local_packages(spec: ReleaseSpec) -> tuple[dict[str, PackageIdentity], list[str]]:
        local = list(spec.packages)
        if spec.packages_folder is not None:
            local.extend(scan_packages_folder(spec.packages_folder))

        by_id: dict[str, PackageIdentity] = {}
        problems: list[str] = []
        for identity in local:
            key = identity.id.casefold()
            existing = by_id.get(key)
            if existing is not None and existing.version != identity.version:
                problems.append(
                    f"package {identity.id} was supplied in two versions ({existing.version}, {identity.version})"
                )
                continue
            if existing is None or existing.path is None:
                by_id[key] = identity
        return by_id, problems

    @staticmethod
    def _requested_version(
        ref: TemplatePackage,
        spec: ReleaseSpec,
        local: dict[str, PackageIdentity],
    ) -> tuple[str | None, str]:
        overrides = {k.casefold(): v for k, v in spec.package_versions.items()}
        candidates = [
            f"{ref.action_name}:{ref.package_reference_name}" if ref.package_reference_name else None,
            ref.package_id,
            ref.action_name,
        ]
        for key in candidates:
            if key and key.casefold() in overrides:
                return overrides[key.casefold()], "requested"
        identity = local.get(ref.package_id.casefold())
        if identity is not None:
            return identity.version, "local package"
        if spec.default_package_version:
            return spec.default_package_version, "default version"
        return None, "feed"

    async def stage(self, template: ReleaseTemplate, spec: ReleaseSpec) -> list[SelectedPackage]:
        """Resolve one version per template package reference.

        Raises:
            PackageResolutionError: If any reference has no usable version.
        """
        local, problems = self._local_packages(spec)
        used_local: set[str] = set()
        selected: list[SelectedPackage] = []

        for ref in template.packages:
            label = f"{ref.action_name}/{ref.package_reference_name or ref.package_id}"
            requested, source = self._requested_version(ref, spec, local)
            feed = await self._feed(ref.feed_id)

            if requested is None:
                version = await self._space.feeds.latest_version(feed, ref.package_id)
                version = version or ref.version_selected_last_release
                if not version:
                    problems.append(f"{label}: no version of {ref.package_id} is available on feed {ref.feed_id}")
                    continue
            else:
                version = requested
                if not await self._space.feeds.has_version(feed, ref.package_id, requested):
                    identity = local.get(ref.package_id.casefold())
                    uploadable = (
                        identity is not None
                        and identity.version == requested
                        and identity.path is not None
                        and feed.feed_type == BUILT_IN_FEED_TYPE
                    )
                    if not uploadable:
                        problems.append(
                            f"{label}: {ref.package_id} {requested} ({source}) is not available on feed {ref.feed_id}"
                        )
                        continue
                    await self._upload(identity)

            if ref.package_id.casefold() in local:
                used_local.add(ref.package_id.casefold())
            selected.append(
                SelectedPackage(
                    action_name=ref.action_name,
                    package_reference_name=ref.package_reference_name,
                    version=version,
                )
            )

        for key, identity in local.items():
            if key not in used_local:
                log.warning("local_package_unused", package=identity.id, version=identity.version)

        if problems:
            msg = f"{len(problems)} package reference(s) could not be resolved."
            raise PackageResolutionError(msg, errors=problems)
        return selected

    async def _upload(self, identity: PackageIdentity | None) -> None:
        if identity is None or identity.path is None or identity in self.uploaded:
            return
        await self._space.packages.upload(identity.path)
        self.uploaded.append(identity)
