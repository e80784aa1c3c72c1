import json
import logging
import re
from pathlib import Path

import yaml

from patchseries.errors import FetchError, PackageNotFoundError, UnsupportedInstallModeError
from patchseries.series.details import PackageDetails

logger = logging.getLogger(__name__)

_SEMVER_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")


def find_app_root(start: Path | None = None) -> Path:
    """
    Walk up from `start` (default: cwd) to the nearest directory holding a
    package.json.

    Raises:
        PackageNotFoundError: no package.json up to the filesystem root
        UnsupportedInstallModeError: the project uses Plug'n'Play installs
    """

    current = Path(start or Path.cwd()).resolve()
    while not (current / "package.json").is_file():
        if current.parent == current:
            raise PackageNotFoundError("package.json", Path(start or Path.cwd()))
        current = current.parent

    if (current / ".pnp.cjs").exists():
        raise UnsupportedInstallModeError(
            "patch-series requires packages installed into node_modules.\n\n"
            "Add to .yarnrc.yml:\n  nodeLinker: node-modules\n\n"
            "Then reinstall your dependencies."
        )
    logger.debug("App root: %s", current)
    return current


def coerce_semver(version: str | None) -> str | None:
    if not version:
        return None
    match = _SEMVER_RE.search(str(version))
    if match is None:
        return None
    return ".".join(match.groups())


def read_package_version(package_json: Path) -> str | None:
    try:
        data = json.loads(Path(package_json).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    version = data.get("version") if isinstance(data, dict) else None
    return str(version) if version else None


class NodeModulesResolver:
    """Locates installed packages under <app_root>/node_modules and their lockfile resolution."""

    def __init__(self, app_root: Path):
        self.app_root = Path(app_root)

    def package_dir(self, package: PackageDetails) -> Path:
        return self.app_root / package.path

    def installed_version(self, package: PackageDetails) -> str | None:
        return read_package_version(self.package_dir(package) / "package.json")

    def _find_lockfile(self) -> Path | None:
        for directory in (self.app_root, *self.app_root.parents):
            candidate = directory / "yarn.lock"
            if candidate.is_file():
                return candidate
        return None

    def resolution(self, package: PackageDetails) -> str:
        """
        What to fetch for a clean copy of the installed package: a version,
        a tarball URL or a `file:` path.
        """

        installed = self.installed_version(package)
        if installed is None:
            raise PackageNotFoundError(package.path_specifier, self.package_dir(package))

        lockfile = self._find_lockfile()
        if lockfile is None:
            logger.warning("No yarn.lock found; using installed version %s of %s", installed, package.name)
            return installed

        text = lockfile.read_text(encoding="utf-8")
        if "yarn lockfile v1" in text:
            raise FetchError(
                "Only Yarn Berry lockfiles are supported; "
                f"{lockfile} is a Yarn v1 lockfile. Upgrade Yarn and reinstall.",
                details={"lockfile": str(lockfile)},
            )
        try:
            entries = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise FetchError(f"Could not parse lockfile {lockfile}: {e}", details={"lockfile": str(lockfile)}) from e

        wanted = coerce_semver(installed)
        for key, value in entries.items():
            if not isinstance(value, dict):
                continue
            descriptors = [d.strip() for d in str(key).split(",")]
            if not any(d.startswith(package.name + "@") for d in descriptors):
                continue
            if coerce_semver(value.get("version")) != wanted:
                continue
            return self._resolution_from_entry(value, installed, lockfile.parent)

        raise FetchError(
            f"`{package.path_specifier}`'s installed version is {installed} but a lockfile entry for it "
            "couldn't be found. Your lockfile may be corrupt or your packages need reinstalling.",
            details={"path_specifier": package.path_specifier, "installed": installed},
        )

    @staticmethod
    def _resolution_from_entry(entry: dict, installed: str, lock_root: Path) -> str:
        resolution = entry.get("resolution")
        if resolution:
            npm_match = re.search(r"@npm:(.+)$", resolution)
            if npm_match:
                return npm_match.group(1)
            if "@file:" in resolution:
                file_path = resolution.split("@file:", 1)[1].split("#", 1)[0].split("::", 1)[0]
                if file_path.startswith("."):
                    return f"file:{(lock_root / file_path).resolve()}"
                return f"file:{file_path}"
            return str(entry.get("version") or installed)
        if entry.get("resolved"):
            return str(entry["resolved"])
        return installed
