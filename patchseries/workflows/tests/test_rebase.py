import logging
from pathlib import Path

import pytest

from patchseries.errors import HunkApplicationError, IntegrityMismatchError, RebaseError
from patchseries.series.catalog import scan_patch_dir
from patchseries.workflows.make import MakeMode, make_patch
from patchseries.workflows.rebase import find_target, rebase

from conftest import INDEX_LINES, read_lines, write_lines

FIRST = "pkg+1.2.3+001+initial.patch"
SECOND = "pkg+1.2.3+002.patch"


def _edit(package_dir: Path, line_number: int, text: str) -> None:
    lines = read_lines(package_dir / "index.js")
    lines[line_number - 1] = text
    write_lines(package_dir / "index.js", lines)


def _line(package_dir: Path, line_number: int) -> str:
    return read_lines(package_dir / "index.js")[line_number - 1]


@pytest.fixture
def series(context, package_dir):
    """A two patch series: line 2 changed by the first, line 20 by the second."""
    _edit(package_dir, 2, "line two")
    make_patch(context, "pkg")
    _edit(package_dir, 20, "line twenty")
    make_patch(context, "pkg", mode=MakeMode.APPEND)
    return context


class TestFindTarget:
    def test_lookup(self, series):
        patches = scan_patch_dir(series.patch_dir).for_package("pkg")

        assert find_target(patches, FIRST).patch_filename == FIRST
        assert find_target(patches, f"patches/{SECOND}").patch_filename == SECOND
        assert find_target(patches, "initial").patch_filename == FIRST
        assert find_target(patches, "2").patch_filename == SECOND
        assert find_target(patches, "7") is None


class TestRebase:
    """Tests for rebase and the make calls that finish it."""

    def test_rebase_then_update_target(self, series, package_dir):
        result = rebase(series, "pkg", "1")

        assert result.target.patch_filename == FIRST
        assert result.unapplied == [SECOND]
        assert _line(package_dir, 20) == "line 20"
        assert _line(package_dir, 2) == "line two"
        state = series.store.load("pkg")
        assert state.is_rebasing
        assert [p.patch_filename for p in state.patches] == [FIRST]

        _edit(package_dir, 5, "line five")
        made = make_patch(series, "pkg")

        assert made.patch_filename == FIRST
        assert made.fast_forwarded == [SECOND]
        assert _line(package_dir, 20) == "line twenty"
        first = (series.patch_dir / FIRST).read_text(encoding="utf-8")
        assert "+line five" in first
        state = series.store.load("pkg")
        assert not state.is_rebasing
        assert state.all_applied
        assert len(state.patches) == 2

    def test_fast_forward_is_logged_as_warning(self, series, package_dir, caplog, monkeypatch):
        # setup_logging from CLI tests turns propagation off
        monkeypatch.setattr(logging.getLogger("patchseries"), "propagate", True)
        rebase(series, "pkg", "1")
        _edit(package_dir, 5, "line five")

        with caplog.at_level(logging.WARNING, logger="patchseries"):
            make_patch(series, "pkg")

        reapplied = [r for r in caplog.records if r.getMessage() == f"Reapplied {SECOND}"]
        assert [r.levelno for r in reapplied] == [logging.WARNING]

    def test_rebase_then_insert(self, series, package_dir):
        rebase(series, "pkg", "initial")
        _edit(package_dir, 10, "line ten")

        made = make_patch(series, "pkg", mode=MakeMode.APPEND, name="middle")

        assert made.patch_filename == "pkg+1.2.3+002+middle.patch"
        assert made.renamed == [(SECOND, "pkg+1.2.3+003.patch")]
        assert made.fast_forwarded == ["pkg+1.2.3+003.patch"]
        assert sorted(p.name for p in series.patch_dir.iterdir()) == [
            FIRST,
            "pkg+1.2.3+002+middle.patch",
            "pkg+1.2.3+003.patch",
        ]
        middle = (series.patch_dir / "pkg+1.2.3+002+middle.patch").read_text(encoding="utf-8")
        assert "+line ten" in middle
        assert "line two" not in middle
        assert series.store.load("pkg").num_applied == 3

    def test_rebase_to_zero(self, series, package_dir):
        result = rebase(series, "pkg", "0")

        assert result.target is None
        assert result.unapplied == [SECOND, FIRST]
        assert read_lines(package_dir / "index.js") == INDEX_LINES
        state = series.store.load("pkg")
        assert state.is_rebasing
        assert state.patches == []

        _edit(package_dir, 15, "line fifteen")
        made = make_patch(series, "pkg")

        assert made.patch_filename == FIRST
        assert made.renamed == [
            (SECOND, "pkg+1.2.3+003.patch"),
            (FIRST, "pkg+1.2.3+002+initial.patch"),
        ]
        assert made.fast_forwarded == ["pkg+1.2.3+002+initial.patch", "pkg+1.2.3+003.patch"]
        assert _line(package_dir, 2) == "line two"
        assert _line(package_dir, 20) == "line twenty"

    def test_failed_fast_forward_keeps_rebasing(self, series, package_dir):
        rebase(series, "pkg", "1")
        _edit(package_dir, 20, "line XX")

        with pytest.raises(RebaseError) as exc_info:
            make_patch(series, "pkg")

        assert SECOND in str(exc_info.value)
        state = series.store.load("pkg")
        assert state.is_rebasing
        assert [p.did_apply for p in state.patches] == [True, False]


class TestRebaseErrors:
    def test_no_patches(self, context):
        with pytest.raises(RebaseError, match="No patch files"):
            rebase(context, "pkg", "1")

    def test_no_state(self, context, package_dir):
        _edit(package_dir, 2, "line two")
        make_patch(context, "pkg")

        with pytest.raises(RebaseError, match="No patch state"):
            rebase(context, "pkg", "pkg+1.2.3.patch")

    def test_already_rebasing(self, series):
        rebase(series, "pkg", "1")

        with pytest.raises(RebaseError, match="Already rebasing"):
            rebase(series, "pkg", "1")

    def test_unknown_target(self, series):
        with pytest.raises(RebaseError, match="Could not find target"):
            rebase(series, "pkg", "nope")

    def test_patch_changed_since_applied(self, series):
        patch_file = series.patch_dir / FIRST
        patch_file.write_text(patch_file.read_text(encoding="utf-8") + "\n", encoding="utf-8")

        with pytest.raises(IntegrityMismatchError):
            rebase(series, "pkg", "1")

    def test_unapply_failure_leaves_series_applied(self, series, package_dir):
        _edit(package_dir, 20, "line XX")

        with pytest.raises(HunkApplicationError):
            rebase(series, "pkg", "1")

        state = series.store.load("pkg")
        assert not state.is_rebasing
        assert [p.patch_filename for p in state.patches] == [FIRST, SECOND]
