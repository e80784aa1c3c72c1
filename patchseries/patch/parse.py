"""
Unified diff parser.

A unified diff looks like:
```diff
diff --git a/node_modules/left-pad/index.js b/node_modules/left-pad/index.js
index 26f73ff..60f3b2f 100644
--- a/node_modules/left-pad/index.js
+++ b/node_modules/left-pad/index.js
@@ -3,6 +3,7 @@ module.exports = leftPad;
 function leftPad(str, len, ch) {
   str = String(str);
   var i = -1;
+  if (!ch && ch !== 0) ch = ' ';
   len = len - str.length;
   while (++i < len) {
     str = ch + str;
```

**Key elements:**
- `diff --git a/path b/path` plus extended headers (`new file mode`,
  `deleted file mode`, `old mode`/`new mode`, `rename from`/`rename to`,
  `index`): describe creations, deletions, renames and mode changes
- `--- a/path` and `+++ b/path`: source and destination files
- `@@ -start,count +start,count @@`: hunk header; the counts decide where
  the hunk body ends
- `\\ No newline at end of file`: attaches to the line right above it
"""

import codecs
import logging
import re
from dataclasses import dataclass, field

from patchseries.errors import MalformedPatchError, UnsupportedChangeKindError
from patchseries.patch.models import (
    EXECUTABLE_FILE_MODE,
    NON_EXECUTABLE_FILE_MODE,
    SYMLINK_FILE_MODE,
    ChangeKind,
    FileDiff,
    Hunk,
    HunkLine,
    LineKind,
    ParsedPatch,
)

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@ ?(.*)$")
INDEX_RE = re.compile(r"^index (\w+)\.\.(\w+)(?: (\d+))?")
NO_NEWLINE_MARKER = "\\ No newline at end of file"
DEV_NULL = "/dev/null"

_LINE_KINDS = {
    " ": LineKind.CONTEXT,
    "+": LineKind.ADDED,
    "-": LineKind.REMOVED,
    # some editors strip the single space off blank context lines
    "": LineKind.CONTEXT,
}

_EXTENDED_HEADERS = (
    "old mode ",
    "new mode ",
    "deleted file mode ",
    "new file mode ",
    "rename from ",
    "rename to ",
)


@dataclass
class _FileSection:
    start_line: int
    diff_old_path: str | None = None
    diff_new_path: str | None = None
    from_path: str | None = None
    to_path: str | None = None
    has_file_markers: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    before_hash: str | None = None
    after_hash: str | None = None
    hunks: list[Hunk] = field(default_factory=list)


def _fragment(lines: list[str], start: int, end: int | None = None) -> str:
    end = len(lines) if end is None else end
    return "\n".join(lines[max(start, 0):min(end, len(lines))])


def _unquote(path: str) -> str:
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        inner = codecs.decode(path[1:-1], "unicode_escape")
        return inner.encode("latin-1").decode("utf-8", "surrogateescape")
    return path


def _marker_path(raw: str, prefix: str) -> str | None:
    path = raw.split("\t", 1)[0].rstrip()
    path = _unquote(path)
    if path == DEV_NULL:
        return None
    return path.removeprefix(prefix)


def _diff_git_paths(line: str, line_number: int) -> tuple[str, str]:
    rest = line[len("diff --git "):].rstrip()

    if rest.startswith('"'):
        end = rest.find('" ', 1)
        while end != -1 and rest[end - 1] == "\\":
            end = rest.find('" ', end + 1)
        if end == -1:
            raise MalformedPatchError(f"Bad diff line: {line}", line, line_number)
        old, new = rest[:end + 1], rest[end + 2:]
    else:
        # identical paths are the common case and tolerate " b/" inside names
        half = (len(rest) - 1) // 2
        if rest[half:half + 1] == " " and rest[:half].removeprefix("a/") == rest[half + 1:].removeprefix("b/"):
            old, new = rest[:half], rest[half + 1:]
        else:
            old, sep, new = rest.partition(" b/")
            if not sep:
                raise MalformedPatchError(f"Bad diff line: {line}", line, line_number)
            new = "b/" + new

    old, new = _unquote(old), _unquote(new)
    if not old.startswith("a/") or not new.startswith("b/"):
        raise MalformedPatchError(f"Bad diff line: {line}", line, line_number)
    return old[2:], new[2:]


def _parse_mode(mode: str, path: str | None) -> int:
    mode = mode.strip()
    if mode == SYMLINK_FILE_MODE:
        raise UnsupportedChangeKindError(path, mode)
    try:
        parsed = int(mode, 8) & 0o777
    except ValueError:
        raise MalformedPatchError(f"Unexpected file mode string: {mode}", mode)
    if parsed not in (NON_EXECUTABLE_FILE_MODE, EXECUTABLE_FILE_MODE):
        raise MalformedPatchError(f"Unexpected file mode string: {mode}", mode)
    return parsed


def _parse_hunk(lines: list[str], start: int) -> tuple[Hunk, int]:
    header = lines[start]
    match = HUNK_HEADER_RE.match(header)
    if not match:
        raise MalformedPatchError(f"Bad hunk header: {header}", header, start + 1)

    old_count = int(match.group(2)) if match.group(2) is not None else 1
    new_count = int(match.group(4)) if match.group(4) is not None else 1
    hunk = Hunk(
        old_start=int(match.group(1)),
        old_count=old_count,
        new_start=int(match.group(3)),
        new_count=new_count,
        section=match.group(5).strip(),
    )

    def integrity_error(at: int) -> MalformedPatchError:
        return MalformedPatchError(
            f"Hunk header integrity check failed: '{header}' does not match its body "
            f"({old_seen} old / {new_seen} new lines before line {at + 1})",
            _fragment(lines, start, at + 1),
            start + 1,
        )

    old_seen = 0
    new_seen = 0
    i = start + 1
    while old_seen < old_count or new_seen < new_count:
        if i >= len(lines):
            raise integrity_error(i - 1)
        raw = lines[i]
        if raw.startswith("\\"):
            _mark_no_newline(hunk, lines, i)
            i += 1
            continue

        kind = _LINE_KINDS.get(raw[:1])
        if kind is None:
            raise integrity_error(i)

        line = HunkLine(kind=kind, text=raw[1:])
        if line.in_old:
            old_seen += 1
        if line.in_new:
            new_seen += 1
        if old_seen > old_count or new_seen > new_count:
            raise integrity_error(i)
        hunk.lines.append(line)
        i += 1

    while i < len(lines) and lines[i].startswith("\\"):
        _mark_no_newline(hunk, lines, i)
        i += 1

    if i < len(lines) and _looks_like_hunk_body(lines, i):
        raise integrity_error(i)

    return hunk, i


def _looks_like_hunk_body(lines: list[str], i: int) -> bool:
    line = lines[i]
    if line.startswith(" "):
        return True
    if line.startswith("+") and not line.startswith("+++ "):
        return True
    # "-- " is the signature separator of format-patch output
    if line.startswith("-") and not line.startswith("--"):
        return True
    return False


def _mark_no_newline(hunk: Hunk, lines: list[str], i: int) -> None:
    if not lines[i].startswith("\\ "):
        raise MalformedPatchError(f"Unrecognized pragma in patch file: {lines[i]}", lines[i], i + 1)
    if not hunk.lines:
        raise MalformedPatchError(
            "'No newline at end of file' marker without a preceding line",
            _fragment(lines, i - 1, i + 1),
            i + 1,
        )
    hunk.lines[-1].no_newline = True


def _read_extended_header(section: _FileSection, line: str) -> None:
    for key in _EXTENDED_HEADERS:
        if line.startswith(key):
            section.headers[key.strip()] = line[len(key):].strip()
            return
    match = INDEX_RE.match(line)
    if match:
        section.before_hash = match.group(1)
        section.after_hash = match.group(2)
        if match.group(3):
            section.headers["index mode"] = match.group(3)


def _interpret(section: _FileSection, lines: list[str]) -> FileDiff:
    headers = section.headers
    old_path = section.from_path or section.diff_old_path
    new_path = section.to_path or section.diff_new_path
    path_for_errors = new_path or old_path

    if section.has_file_markers and not section.hunks:
        raise MalformedPatchError(
            f"File header for {path_for_errors} is not followed by any hunk",
            _fragment(lines, section.start_line, section.start_line + 6),
            section.start_line + 1,
        )

    if "rename from" in headers or "rename to" in headers:
        if "rename from" not in headers or "rename to" not in headers:
            raise MalformedPatchError(
                "Rename header without both 'rename from' and 'rename to'",
                _fragment(lines, section.start_line, section.start_line + 6),
                section.start_line + 1,
            )
        file_diff = FileDiff(
            old_path=_unquote(headers["rename from"]),
            new_path=_unquote(headers["rename to"]),
            kind=ChangeKind.RENAME,
        )
    elif "deleted file mode" in headers or (section.has_file_markers and section.to_path is None):
        path = section.diff_old_path or section.from_path
        file_diff = FileDiff(old_path=path, new_path=None, kind=ChangeKind.DELETE)
        if "deleted file mode" in headers:
            file_diff.old_mode = _parse_mode(headers["deleted file mode"], path)
    elif "new file mode" in headers or (section.has_file_markers and section.from_path is None):
        path = section.diff_new_path or section.to_path
        file_diff = FileDiff(old_path=None, new_path=path, kind=ChangeKind.CREATE)
        file_diff.new_mode = _parse_mode(headers.get("new file mode", "100644"), path)
    else:
        file_diff = FileDiff(old_path=old_path, new_path=new_path, kind=ChangeKind.MODIFY)

    # an unchanged mode is only given on the index line
    if "index mode" in headers:
        _parse_mode(headers["index mode"], file_diff.path)

    if file_diff.kind in (ChangeKind.MODIFY, ChangeKind.RENAME):
        if "old mode" in headers:
            file_diff.old_mode = _parse_mode(headers["old mode"], file_diff.path)
        if "new mode" in headers:
            file_diff.new_mode = _parse_mode(headers["new mode"], file_diff.path)

    if not file_diff.old_path and not file_diff.new_path:
        raise MalformedPatchError(
            "No path given for file diff",
            _fragment(lines, section.start_line, section.start_line + 6),
            section.start_line + 1,
        )

    file_diff.hunks = section.hunks
    file_diff.before_hash = section.before_hash
    file_diff.after_hash = section.after_hash
    _check_whole_file_hunks(file_diff, lines, section.start_line)
    return file_diff


def _check_whole_file_hunks(file_diff: FileDiff, lines: list[str], start_line: int) -> None:
    if file_diff.kind == ChangeKind.CREATE:
        forbidden = (LineKind.CONTEXT, LineKind.REMOVED)
    elif file_diff.kind == ChangeKind.DELETE:
        forbidden = (LineKind.CONTEXT, LineKind.ADDED)
    else:
        return
    if len(file_diff.hunks) > 1 or any(
        line.kind in forbidden for hunk in file_diff.hunks for line in hunk.lines
    ):
        raise MalformedPatchError(
            f"File {file_diff.kind.value} of {file_diff.path} must consist of a single whole-file hunk",
            _fragment(lines, start_line, start_line + 8),
            start_line + 1,
        )


def parse_patch(text: str) -> ParsedPatch:
    """
    Parse a (possibly multi-file) unified diff into a ParsedPatch.

    Pure: never touches the filesystem.

    Raises:
        MalformedPatchError: a file header has no hunk, a hunk body does not
            match its header counts, or a line cannot be interpreted
        UnsupportedChangeKindError: a file mode denotes a symbolic link
    """

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    files: list[FileDiff] = []
    current: _FileSection | None = None
    i = 0

    while i < len(lines):
        line = lines[i]

        if line.startswith("diff --git "):
            if current is not None:
                files.append(_interpret(current, lines))
            current = _FileSection(start_line=i)
            current.diff_old_path, current.diff_new_path = _diff_git_paths(line, i + 1)
            i += 1
            continue

        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            # without a `diff --git` line a new marker pair starts the next file
            if current is None or current.has_file_markers:
                if current is not None:
                    files.append(_interpret(current, lines))
                current = _FileSection(start_line=i)
            current.from_path = _marker_path(line[4:], "a/")
            current.to_path = _marker_path(lines[i + 1][4:], "b/")
            current.has_file_markers = True
            i += 2
            continue

        if line.startswith("@@"):
            if current is None or not current.has_file_markers:
                raise MalformedPatchError(
                    "Hunk found without a preceding ---/+++ file header",
                    _fragment(lines, i - 2, i + 3),
                    i + 1,
                )
            hunk, i = _parse_hunk(lines, i)
            current.hunks.append(hunk)
            continue

        if current is not None and not current.has_file_markers:
            _read_extended_header(current, line)
        i += 1

    if current is not None:
        files.append(_interpret(current, lines))

    logger.debug("Parsed %d file diffs from unified diff", len(files))
    return ParsedPatch(files=files)
