import difflib
import json
import shutil
from pathlib import Path

import pytest

from patchseries.config import Settings
from patchseries.npm.resolver import NodeModulesResolver
from patchseries.series.details import PackageDetails
from patchseries.series.state import StateStore
from patchseries.workflows.context import ProjectContext

PACKAGE_NAME = "pkg"
PACKAGE_VERSION = "1.2.3"
INDEX_LINES = [f"line {i}" for i in range(1, 31)]
UTIL_LINES = ["exports.a = 1;", "exports.b = 2;", "exports.c = 3;"]


class DifflibDiffProducer:
    """Git-style unified diffs computed with difflib; no git binary needed."""

    def diff(self, clean_root: Path, modified_root: Path) -> str:
        clean = {p.relative_to(clean_root).as_posix() for p in clean_root.rglob("*") if p.is_file()}
        modified = {p.relative_to(modified_root).as_posix() for p in modified_root.rglob("*") if p.is_file()}

        out: list[str] = []
        for rel in sorted(clean | modified):
            before = Path(clean_root, rel).read_text(encoding="utf-8").splitlines() if rel in clean else []
            after = Path(modified_root, rel).read_text(encoding="utf-8").splitlines() if rel in modified else []
            if rel in clean and rel in modified and before == after:
                continue

            out.append(f"diff --git a/{rel} b/{rel}")
            if rel not in clean:
                out.append("new file mode 100644")
            elif rel not in modified:
                out.append("deleted file mode 100644")
            out.append(f"--- a/{rel}" if rel in clean else "--- /dev/null")
            out.append(f"+++ b/{rel}" if rel in modified else "+++ /dev/null")
            body = list(difflib.unified_diff(before, after, n=3, lineterm=""))
            out.extend(body[2:])

        return "\n".join(out) + "\n" if out else ""


class DirectoryFetcher:
    """Copies clean packages from a local registry directory."""

    def __init__(self, registry_dir: Path):
        self.registry_dir = registry_dir
        self.fetched: list[tuple[str, str]] = []

    def fetch(self, package: PackageDetails, resolution: str, dest: Path) -> None:
        self.fetched.append((package.name, resolution))
        shutil.copytree(self.registry_dir / package.name, dest, dirs_exist_ok=True)


class InstalledVersionResolver(NodeModulesResolver):
    def resolution(self, package: PackageDetails) -> str:
        return self.installed_version(package)


def write_lines(path: Path, lines: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def read_lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


def _populate_package(package_dir: Path, version: str) -> None:
    package_dir.mkdir(parents=True, exist_ok=True)
    (package_dir / "package.json").write_text(
        json.dumps({"name": PACKAGE_NAME, "version": version}), encoding="utf-8"
    )
    write_lines(package_dir / "index.js", INDEX_LINES)
    write_lines(package_dir / "lib" / "util.js", UTIL_LINES)


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    root.mkdir()
    (root / "package.json").write_text('{"name": "app"}', encoding="utf-8")
    _populate_package(root / "node_modules" / PACKAGE_NAME, PACKAGE_VERSION)
    return root


@pytest.fixture
def registry_dir(tmp_path: Path) -> Path:
    registry = tmp_path / "registry"
    _populate_package(registry / PACKAGE_NAME, PACKAGE_VERSION)
    return registry


@pytest.fixture
def context(app_root: Path, registry_dir: Path) -> ProjectContext:
    settings = Settings()
    return ProjectContext(
        app_root=app_root,
        settings=settings,
        resolver=InstalledVersionResolver(app_root),
        fetcher=DirectoryFetcher(registry_dir),
        differ=DifflibDiffProducer(),
        store=StateStore(app_root / settings.state_dir, settings.patch_dir),
    )


@pytest.fixture
def package_dir(app_root: Path) -> Path:
    return app_root / "node_modules" / PACKAGE_NAME


@pytest.fixture
def reinstall(app_root: Path, registry_dir: Path, context: ProjectContext):
    """Replace the installed package with a clean copy, like a fresh install."""

    def _reinstall(version: str = PACKAGE_VERSION) -> None:
        package_dir = app_root / "node_modules" / PACKAGE_NAME
        shutil.rmtree(package_dir)
        _populate_package(package_dir, version)
        state_dir = app_root / context.settings.state_dir
        if state_dir.exists():
            shutil.rmtree(state_dir)

    return _reinstall
