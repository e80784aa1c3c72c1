import json
from pathlib import Path

import pytest

from patchseries.errors import HunkApplicationError, IntegrityMismatchError
from patchseries.series.catalog import scan_patch_dir
from patchseries.workflows.apply import REJECTS_FILE_NAME, apply_patch_file, apply_patches_for_app
from patchseries.workflows.make import MakeMode, make_patch

from conftest import INDEX_LINES, UTIL_LINES, read_lines, write_lines

FIRST = "pkg+1.2.3+001+initial.patch"
SECOND = "pkg+1.2.3+002.patch"

APPEND_AT_EOF_PATCH = """\
diff --git a/node_modules/pkg/index.js b/node_modules/pkg/index.js
--- a/node_modules/pkg/index.js
+++ b/node_modules/pkg/index.js
@@ -28,3 +28,4 @@
 line 28
 line 29
 line 30
+line 31
"""


def _edit(path: Path, line_number: int, text: str) -> None:
    lines = read_lines(path)
    lines[line_number - 1] = text
    write_lines(path, lines)


@pytest.fixture
def single(context, package_dir, reinstall):
    _edit(package_dir / "index.js", 2, "line two")
    _edit(package_dir / "lib" / "util.js", 2, "exports.b = 20;")
    make_patch(context, "pkg")
    reinstall()
    return context


@pytest.fixture
def series(context, package_dir, reinstall):
    _edit(package_dir / "index.js", 2, "line two")
    make_patch(context, "pkg")
    _edit(package_dir / "index.js", 20, "line twenty")
    make_patch(context, "pkg", mode=MakeMode.APPEND)
    reinstall()
    return context


class TestApplyPatchFile:
    """Tests for applying one patch file."""

    def test_already_applied_is_not_an_error(self, single, package_dir):
        patch = scan_patch_dir(single.patch_dir).for_package("pkg")[0]
        apply_patch_file(single, patch)

        application = apply_patch_file(single, patch)

        assert application.already_applied
        assert application.result is None
        assert read_lines(package_dir / "index.js")[1] == "line two"

    def test_reverse_of_unapplied_patch(self, single, package_dir):
        patch = scan_patch_dir(single.patch_dir).for_package("pkg")[0]

        application = apply_patch_file(single, patch, reverse=True)

        assert application.already_applied
        assert read_lines(package_dir / "index.js") == INDEX_LINES

    def test_neither_direction_applies(self, single, package_dir):
        write_lines(package_dir / "index.js", ["something", "else", "entirely"])
        patch = scan_patch_dir(single.patch_dir).for_package("pkg")[0]

        with pytest.raises(HunkApplicationError):
            apply_patch_file(single, patch)


class TestApplyPatchesForApp:
    """Tests for applying everything in the patch directory."""

    def test_no_patch_dir(self, context):
        report = apply_patches_for_app(context)

        assert report.applied == []
        assert report.exit_code() == 0

    def test_single_patch(self, single, package_dir):
        report = apply_patches_for_app(single)

        assert report.applied == ["pkg+1.2.3.patch"]
        assert report.errors == []
        assert read_lines(package_dir / "lib" / "util.js")[1] == "exports.b = 20;"
        assert single.store.load("pkg") is None

    def test_second_run_leaves_end_of_file_append_alone(self, context, package_dir):
        context.patch_dir.mkdir(parents=True)
        (context.patch_dir / "pkg+1.2.3.patch").write_text(APPEND_AT_EOF_PATCH, encoding="utf-8")

        first = apply_patches_for_app(context)
        second = apply_patches_for_app(context)

        assert first.applied == ["pkg+1.2.3.patch"]
        assert second.applied == []
        assert second.skipped == ["pkg+1.2.3.patch"]
        assert read_lines(package_dir / "index.js").count("line 31") == 1

    def test_partial_second_run_leaves_end_of_file_append_alone(self, context, package_dir):
        context.patch_dir.mkdir(parents=True)
        (context.patch_dir / "pkg+1.2.3.patch").write_text(APPEND_AT_EOF_PATCH, encoding="utf-8")

        apply_patches_for_app(context, best_effort=True)
        report = apply_patches_for_app(context, best_effort=True)

        assert report.skipped == ["pkg+1.2.3.patch"]
        assert read_lines(package_dir / "index.js") == INDEX_LINES + ["line 31"]

    def test_series_records_state(self, series, package_dir):
        report = apply_patches_for_app(series)

        assert report.applied == [FIRST, SECOND]
        lines = read_lines(package_dir / "index.js")
        assert lines[1] == "line two"
        assert lines[19] == "line twenty"
        state = series.store.load("pkg")
        assert state.all_applied
        assert [p.patch_filename for p in state.patches] == [FIRST, SECOND]

    def test_second_run_skips_applied_patches(self, series):
        apply_patches_for_app(series)

        report = apply_patches_for_app(series)

        assert report.applied == []
        assert report.skipped == [FIRST, SECOND]

    def test_reverse_series(self, series, package_dir):
        apply_patches_for_app(series)

        report = apply_patches_for_app(series, reverse=True)

        assert report.applied == [SECOND, FIRST]
        assert read_lines(package_dir / "index.js") == INDEX_LINES
        assert series.store.load("pkg") is None

    def test_reverse_without_state(self, single, package_dir):
        apply_patches_for_app(single)

        apply_patches_for_app(single, reverse=True)

        assert read_lines(package_dir / "index.js") == INDEX_LINES
        assert read_lines(package_dir / "lib" / "util.js") == UTIL_LINES

    def test_failure_in_series(self, series, package_dir):
        write_lines(package_dir / "index.js", INDEX_LINES[:10])

        report = apply_patches_for_app(series)

        assert report.applied == [FIRST]
        assert len(report.errors) == 1
        assert SECOND in report.errors[0]
        assert report.exit_code() == 1
        assert report.exit_code(error_on_fail=False) == 0
        state = series.store.load("pkg")
        assert state.is_rebasing
        assert [p.did_apply for p in state.patches] == [True, False]

    def test_partial_writes_rejects(self, single, package_dir):
        write_lines(package_dir / "lib" / "util.js", ["completely", "different"])

        report = apply_patches_for_app(single, best_effort=True)

        assert report.errors == []
        assert len(report.warnings) == 1
        assert report.exit_code() == 0
        assert report.exit_code(error_on_warn=True) == 1
        assert read_lines(package_dir / "index.js")[1] == "line two"
        rejects = json.loads((single.app_root / REJECTS_FILE_NAME).read_text(encoding="utf-8"))
        files = rejects["patches"]["pkg+1.2.3.patch"]
        assert [f["path"] for f in files] == ["node_modules/pkg/lib/util.js"]
        assert report.rejects_path == single.app_root / REJECTS_FILE_NAME

    def test_version_mismatch_warns(self, single, reinstall):
        reinstall(version="1.2.4")

        report = apply_patches_for_app(single)

        assert report.applied == ["pkg+1.2.3.patch"]
        assert any("1.2.4 is installed" in w for w in report.warnings)

    def test_changed_patch_after_apply(self, series):
        apply_patches_for_app(series)
        patch_file = series.patch_dir / FIRST
        patch_file.write_text(patch_file.read_text(encoding="utf-8") + "\n", encoding="utf-8")

        with pytest.raises(IntegrityMismatchError):
            apply_patches_for_app(series)

    def test_missing_dev_only_package_is_skipped(self, context):
        context.patch_dir.mkdir(parents=True)
        (context.patch_dir / "devtool+0.1.0.dev.patch").write_text(
            "diff --git a/node_modules/devtool/a.js b/node_modules/devtool/a.js\n"
            "--- a/node_modules/devtool/a.js\n"
            "+++ b/node_modules/devtool/a.js\n"
            "@@ -1 +1 @@\n"
            "-a\n"
            "+b\n",
            encoding="utf-8",
        )

        report = apply_patches_for_app(context)

        assert report.skipped == ["devtool+0.1.0.dev.patch"]
        assert report.errors == []

    def test_missing_package_is_an_error(self, context):
        context.patch_dir.mkdir(parents=True)
        (context.patch_dir / "ghost+0.1.0.patch").write_text(
            "diff --git a/node_modules/ghost/a.js b/node_modules/ghost/a.js\n"
            "--- a/node_modules/ghost/a.js\n"
            "+++ b/node_modules/ghost/a.js\n"
            "@@ -1 +1 @@\n"
            "-a\n"
            "+b\n",
            encoding="utf-8",
        )

        report = apply_patches_for_app(context)

        assert "not present" in report.errors[0]
        assert report.exit_code() == 1
