from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from patchseries.config import Settings
from patchseries.npm.fetch import RegistryFetcher
from patchseries.npm.resolver import NodeModulesResolver
from patchseries.series.details import PackageDetails
from patchseries.series.state import StateStore
from patchseries.util.git import GitDiffProducer


class PackageResolver(Protocol):
    def package_dir(self, package: PackageDetails) -> Path:
        ...

    def installed_version(self, package: PackageDetails) -> str | None:
        ...

    def resolution(self, package: PackageDetails) -> str:
        ...


class PackageFetcher(Protocol):
    def fetch(self, package: PackageDetails, resolution: str, dest: Path) -> None:
        ...


class DiffProducer(Protocol):
    def diff(self, clean_root: Path, modified_root: Path) -> str:
        ...


@dataclass
class ProjectContext:
    """Everything a workflow needs to work on one project."""

    app_root: Path
    settings: Settings
    resolver: PackageResolver
    fetcher: PackageFetcher
    differ: DiffProducer
    store: StateStore

    @property
    def patch_dir(self) -> Path:
        return self.app_root / self.settings.patch_dir

    @classmethod
    def for_app(cls, app_root: Path, settings: Settings) -> "ProjectContext":
        app_root = Path(app_root)
        return cls(
            app_root=app_root,
            settings=settings,
            resolver=NodeModulesResolver(app_root),
            fetcher=RegistryFetcher(
                app_root,
                registry_url=settings.registry_url,
                timeout_sec=settings.fetch_timeout_sec,
            ),
            differ=GitDiffProducer(),
            store=StateStore(app_root / settings.state_dir, settings.patch_dir),
        )
