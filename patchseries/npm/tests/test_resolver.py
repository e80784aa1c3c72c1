import json
from pathlib import Path

import pytest

from patchseries.errors import FetchError, PackageNotFoundError, UnsupportedInstallModeError
from patchseries.npm.resolver import NodeModulesResolver, coerce_semver, find_app_root
from patchseries.series.details import package_details_from_specifier

BERRY_LOCKFILE = """\
__metadata:
  version: 6
  cacheKey: 8

"left-pad@npm:^1.3.0":
  version: 1.3.0
  resolution: "left-pad@npm:1.3.0"
  checksum: abc

"@scope/util@npm:^2.0.0, @scope/util@npm:^2.1.0":
  version: 2.1.4
  resolution: "@scope/util@npm:2.1.4"

"local-lib@file:./vendor/local-lib::locator=app%40workspace%3A.":
  version: 0.1.0
  resolution: "local-lib@file:./vendor/local-lib#./vendor/local-lib::hash=1&locator=app%40workspace%3A."
"""


def _install(app_root: Path, name: str, version: str) -> None:
    package_dir = app_root / "node_modules" / name
    package_dir.mkdir(parents=True, exist_ok=True)
    (package_dir / "package.json").write_text(json.dumps({"name": name, "version": version}), encoding="utf-8")


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    (tmp_path / "package.json").write_text('{"name": "app"}', encoding="utf-8")
    return tmp_path


class TestFindAppRoot:
    """Tests for find_app_root."""

    def test_walks_up_to_package_json(self, app_root: Path):
        nested = app_root / "src" / "components"
        nested.mkdir(parents=True)

        assert find_app_root(nested) == app_root.resolve()

    def test_no_package_json(self, tmp_path: Path):
        with pytest.raises(PackageNotFoundError):
            find_app_root(tmp_path)

    def test_plug_n_play_rejected(self, app_root: Path):
        (app_root / ".pnp.cjs").write_text("", encoding="utf-8")

        with pytest.raises(UnsupportedInstallModeError) as exc_info:
            find_app_root(app_root)

        assert "nodeLinker: node-modules" in str(exc_info.value)


class TestCoerceSemver:
    def test_coerce(self):
        assert coerce_semver("1.2.3") == "1.2.3"
        assert coerce_semver("v1.2.3-beta.1") == "1.2.3"
        assert coerce_semver("latest") is None
        assert coerce_semver(None) is None


class TestNodeModulesResolver:
    """Tests for installed versions and lockfile resolutions."""

    def test_installed_version(self, app_root: Path):
        _install(app_root, "left-pad", "1.3.0")
        resolver = NodeModulesResolver(app_root)

        assert resolver.installed_version(package_details_from_specifier("left-pad")) == "1.3.0"
        assert resolver.installed_version(package_details_from_specifier("missing")) is None

    def test_npm_resolution(self, app_root: Path):
        _install(app_root, "left-pad", "1.3.0")
        (app_root / "yarn.lock").write_text(BERRY_LOCKFILE, encoding="utf-8")

        resolution = NodeModulesResolver(app_root).resolution(package_details_from_specifier("left-pad"))

        assert resolution == "1.3.0"

    def test_scoped_package_with_combined_descriptors(self, app_root: Path):
        _install(app_root, "@scope/util", "2.1.4")
        (app_root / "yarn.lock").write_text(BERRY_LOCKFILE, encoding="utf-8")

        resolution = NodeModulesResolver(app_root).resolution(package_details_from_specifier("@scope/util"))

        assert resolution == "2.1.4"

    def test_file_resolution_is_absolute(self, app_root: Path):
        _install(app_root, "local-lib", "0.1.0")
        (app_root / "yarn.lock").write_text(BERRY_LOCKFILE, encoding="utf-8")

        resolution = NodeModulesResolver(app_root).resolution(package_details_from_specifier("local-lib"))

        assert resolution.startswith("file:")
        assert Path(resolution[len("file:"):]).is_absolute()
        assert resolution == f"file:{(app_root / 'vendor' / 'local-lib').resolve()}"

    def test_version_not_in_lockfile(self, app_root: Path):
        _install(app_root, "left-pad", "1.1.0")
        (app_root / "yarn.lock").write_text(BERRY_LOCKFILE, encoding="utf-8")

        with pytest.raises(FetchError) as exc_info:
            NodeModulesResolver(app_root).resolution(package_details_from_specifier("left-pad"))

        assert "installed version is 1.1.0" in str(exc_info.value)

    def test_yarn_v1_lockfile_rejected(self, app_root: Path):
        _install(app_root, "left-pad", "1.3.0")
        (app_root / "yarn.lock").write_text("# yarn lockfile v1\n\nleft-pad@^1.3.0:\n  version \"1.3.0\"\n", encoding="utf-8")

        with pytest.raises(FetchError):
            NodeModulesResolver(app_root).resolution(package_details_from_specifier("left-pad"))

    def test_without_lockfile_uses_installed_version(self, app_root: Path):
        _install(app_root, "left-pad", "1.3.0")

        resolution = NodeModulesResolver(app_root).resolution(package_details_from_specifier("left-pad"))

        assert resolution == "1.3.0"

    def test_not_installed(self, app_root: Path):
        with pytest.raises(PackageNotFoundError):
            NodeModulesResolver(app_root).resolution(package_details_from_specifier("left-pad"))
