import logging
import stat
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field

from patchseries.errors import HunkApplicationError
from patchseries.patch.models import (
    NON_EXECUTABLE_FILE_MODE,
    ChangeKind,
    FileDiff,
    Hunk,
    HunkLine,
    LineKind,
    ParsedPatch,
)
from patchseries.patch.paths import resolve_patch_path
from patchseries.patch.reverse import reverse_patch

logger = logging.getLogger(__name__)

# Maximum distance, in lines, between where a hunk says it starts and where
# its old-side content may be found. Offsets are tried nearest first:
# 0, -1, +1, -2, +2, ...
DEFAULT_MAX_FUZZ = 20


class HunkStatus(StrEnum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    FAILED = "failed"


class HunkResult(BaseModel):
    index: int
    status: HunkStatus
    offset: int = 0
    line: int | None = None
    reason: str | None = None
    source: str | None = None


class FileApplyResult(BaseModel):
    path: str
    kind: ChangeKind
    hunks: list[HunkResult] = Field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or any(h.status == HunkStatus.FAILED for h in self.hunks)

    @property
    def rejected_hunks(self) -> list[HunkResult]:
        return [h for h in self.hunks if h.status == HunkStatus.FAILED]


class ApplyResult(BaseModel):
    reverse: bool = False
    dry_run: bool = False
    files: list[FileApplyResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(f.failed for f in self.files)

    @property
    def rejections(self) -> list[FileApplyResult]:
        return [f for f in self.files if f.failed]

    @property
    def fuzzy_hunks(self) -> list[tuple[str, HunkResult]]:
        return [
            (f.path, h)
            for f in self.files
            for h in f.hunks
            if h.status == HunkStatus.FUZZY
        ]

    @property
    def changed_files(self) -> list[str]:
        return [f.path for f in self.files if not f.failed]


@dataclass
class _FileState:
    lines: list[str]
    eol: bool
    mode: int | None
    exists: bool


def _split_text(text: str) -> tuple[list[str], bool]:
    if text == "":
        return [], True
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
        return lines, True
    return lines, False


def _join_text(lines: list[str], eol: bool) -> str:
    if not lines:
        return ""
    return "\n".join(lines) + ("\n" if eol else "")


class _Workspace:
    """Planned contents of the files a patch touches; written only on commit."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._files: dict[str, _FileState] = {}
        self._dirty: list[str] = []

    def get(self, rel: str) -> _FileState:
        if rel not in self._files:
            path = resolve_patch_path(self.root, rel)
            if path.is_file():
                text = path.read_bytes().decode("utf-8", "surrogateescape")
                lines, eol = _split_text(text)
                mode = stat.S_IMODE(path.stat().st_mode)
                self._files[rel] = _FileState(lines, eol, mode, True)
            else:
                self._files[rel] = _FileState([], True, None, False)
        return self._files[rel]

    def put(self, rel: str, state: _FileState) -> None:
        self._files[rel] = state
        if rel not in self._dirty:
            self._dirty.append(rel)

    def commit(self) -> None:
        for rel in self._dirty:
            state = self._files[rel]
            path = resolve_patch_path(self.root, rel)
            if not state.exists:
                if path.is_file() or path.is_symlink():
                    path.unlink()
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(_join_text(state.lines, state.eol).encode("utf-8", "surrogateescape"))
            if state.mode is not None:
                path.chmod(state.mode)
        logger.debug("Wrote %d files under %s", len(self._dirty), self.root)


def _fuzz_offsets(max_fuzz: int):
    yield 0
    for distance in range(1, max_fuzz + 1):
        yield -distance
        yield distance


def _matches_at(work: list[str], position: int, old: list[HunkLine]) -> bool:
    if position < 0 or position + len(old) > len(work):
        return False
    if old and old[-1].no_newline and position + len(old) != len(work):
        return False
    for i, line in enumerate(old):
        if work[position + i].rstrip() != line.text.rstrip():
            return False
    return True


def _locate(
    work: list[str],
    old: list[HunkLine],
    expected: int,
    floor: int,
    max_fuzz: int,
) -> int | None:
    for step in _fuzz_offsets(max_fuzz):
        position = expected + step
        if position < floor:
            continue
        if _matches_at(work, position, old):
            return position
    return None


def _apply_hunks(
    state: _FileState,
    hunks: list[Hunk],
    path: str,
    max_fuzz: int,
) -> tuple[list[str], bool, list[HunkResult]]:
    work = list(state.lines)
    eol = state.eol
    results: list[HunkResult] = []
    delta = 0
    carried = 0
    floor = 0

    for index, hunk in enumerate(hunks):
        old = hunk.old_lines
        new = hunk.new_lines
        declared = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        anchor = declared + delta
        position = _locate(work, old, anchor + carried, floor, max_fuzz)

        if position is None:
            logger.debug("Hunk %d of %s not found within %d lines of line %d", index, path, max_fuzz, anchor + 1)
            results.append(
                HunkResult(
                    index=index,
                    status=HunkStatus.FAILED,
                    reason=f"context not found within {max_fuzz} lines of line {anchor + 1}",
                    source=hunk.source(),
                )
            )
            continue

        replacement: list[str] = []
        cursor = position
        for line in hunk.lines:
            if line.kind == LineKind.CONTEXT:
                replacement.append(work[cursor])
                cursor += 1
            elif line.kind == LineKind.REMOVED:
                cursor += 1
            else:
                replacement.append(line.text)

        reaches_eof = position + len(old) == len(work)
        work[position:position + len(old)] = replacement
        if reaches_eof and new:
            eol = not new[-1].no_newline

        offset = position - anchor
        if offset:
            logger.warning("Hunk %d of %s applied with offset %+d lines", index, path, offset)
        results.append(
            HunkResult(
                index=index,
                status=HunkStatus.FUZZY if offset else HunkStatus.EXACT,
                offset=offset,
                line=position + 1,
            )
        )
        carried = offset
        delta += len(new) - len(old)
        floor = position + len(replacement)

    return work, eol, results


def _whole_file_lines(file_diff: FileDiff) -> tuple[list[str], bool]:
    if not file_diff.hunks:
        return [], True
    new = file_diff.hunks[0].new_lines
    lines = [line.text for line in new]
    eol = not (new and new[-1].no_newline)
    return lines, eol


def _apply_file(ws: _Workspace, file_diff: FileDiff, max_fuzz: int) -> FileApplyResult:
    result = FileApplyResult(path=file_diff.path, kind=file_diff.kind)

    if file_diff.kind == ChangeKind.CREATE:
        if ws.get(file_diff.new_path).exists:
            result.error = f"Trying to create file that already exists: {file_diff.new_path}"
            return result
        lines, eol = _whole_file_lines(file_diff)
        mode = file_diff.new_mode or NON_EXECUTABLE_FILE_MODE
        ws.put(file_diff.new_path, _FileState(lines, eol, mode, True))
        return result

    if file_diff.kind == ChangeKind.DELETE:
        if not ws.get(file_diff.old_path).exists:
            result.error = f"Trying to delete file that doesn't exist: {file_diff.old_path}"
            return result
        ws.put(file_diff.old_path, _FileState([], True, None, False))
        return result

    source = ws.get(file_diff.old_path)
    if not source.exists:
        verb = "move" if file_diff.kind == ChangeKind.RENAME else "patch"
        result.error = f"Trying to {verb} file that doesn't exist: {file_diff.old_path}"
        return result
    if file_diff.kind == ChangeKind.RENAME and ws.get(file_diff.new_path).exists:
        result.error = f"Trying to move {file_diff.old_path} onto existing file {file_diff.new_path}"
        return result

    lines, eol, hunk_results = _apply_hunks(source, file_diff.hunks, file_diff.path, max_fuzz)
    result.hunks = hunk_results
    if all(h.status == HunkStatus.FAILED for h in hunk_results) and hunk_results:
        return result

    mode = source.mode
    if file_diff.mode_changed:
        mode = file_diff.new_mode

    if file_diff.kind == ChangeKind.RENAME:
        ws.put(file_diff.old_path, _FileState([], True, None, False))
    ws.put(file_diff.new_path, _FileState(lines, eol, mode, True))
    return result


def apply_patch(
    patch: ParsedPatch,
    target_root: Path,
    *,
    reverse: bool = False,
    best_effort: bool = False,
    dry_run: bool = False,
    max_fuzz: int = DEFAULT_MAX_FUZZ,
) -> ApplyResult:
    """
    Apply a parsed patch to the tree under target_root.

    Every file is planned in memory first. In normal mode the first failure
    raises before anything is written, so a failed application leaves the
    tree untouched. In best-effort mode failed hunks and files are skipped,
    recorded in the result, and everything else is written.

    Args:
        patch: parsed diff; paths are relative to target_root
        target_root: directory the diff paths are relative to
        reverse: un-apply the patch instead
        best_effort: keep going past failures
        dry_run: only check that the patch applies
        max_fuzz: largest line offset tried when locating a hunk

    Raises:
        HunkApplicationError: a hunk or file operation failed (normal mode)
        PathEscapeError: a diff path points outside target_root
    """

    if reverse:
        patch = reverse_patch(patch)

    ws = _Workspace(target_root)
    result = ApplyResult(reverse=reverse, dry_run=dry_run)

    for file_diff in patch:
        file_result = _apply_file(ws, file_diff, max_fuzz)
        result.files.append(file_result)
        if not file_result.failed:
            continue
        if best_effort:
            logger.warning("Skipping failed changes to %s", file_result.path)
            continue
        rejected = file_result.rejected_hunks
        if file_result.error is not None:
            raise HunkApplicationError(file_result.path, file_result.error)
        first = rejected[0]
        raise HunkApplicationError(
            file_result.path,
            f"Cannot apply hunk {first.index} for file {file_result.path}\n```diff\n{first.source}\n```\n",
            hunk_index=first.index,
            source=first.source or "",
        )

    if not dry_run:
        ws.commit()

    logger.debug(
        "Applied patch to %s (%d files, reverse=%s, dry_run=%s)",
        target_root, len(result.files), reverse, dry_run,
    )
    return result
