from dataclasses import dataclass, field
from enum import StrEnum

NON_EXECUTABLE_FILE_MODE = 0o644
EXECUTABLE_FILE_MODE = 0o755
SYMLINK_FILE_MODE = "120000"


class LineKind(StrEnum):
    CONTEXT = " "
    ADDED = "+"
    REMOVED = "-"


class ChangeKind(StrEnum):
    MODIFY = "modify"
    CREATE = "create"
    DELETE = "delete"
    RENAME = "rename"


@dataclass
class HunkLine:
    kind: LineKind
    text: str
    no_newline: bool = False

    @property
    def in_old(self) -> bool:
        return self.kind != LineKind.ADDED

    @property
    def in_new(self) -> bool:
        return self.kind != LineKind.REMOVED


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[HunkLine] = field(default_factory=list)
    section: str = ""

    @property
    def old_lines(self) -> list[HunkLine]:
        return [line for line in self.lines if line.in_old]

    @property
    def new_lines(self) -> list[HunkLine]:
        return [line for line in self.lines if line.in_new]

    def header(self) -> str:
        section = f" {self.section}" if self.section else ""
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@{section}"

    def source(self) -> str:
        out = [self.header()]
        for line in self.lines:
            out.append(f"{line.kind.value}{line.text}")
            if line.no_newline:
                out.append("\\ No newline at end of file")
        return "\n".join(out)


@dataclass
class FileDiff:
    """
    One file's change within a patch.

    Paths are relative to the patch root with the `a/` / `b/` prefixes
    removed. Creations have no old path and deletions have no new path.
    """

    old_path: str | None
    new_path: str | None
    kind: ChangeKind = ChangeKind.MODIFY
    old_mode: int | None = None
    new_mode: int | None = None
    hunks: list[Hunk] = field(default_factory=list)
    before_hash: str | None = None
    after_hash: str | None = None

    @property
    def path(self) -> str:
        return self.new_path or self.old_path or ""

    @property
    def mode_changed(self) -> bool:
        return (
            self.kind in (ChangeKind.MODIFY, ChangeKind.RENAME)
            and self.old_mode is not None
            and self.new_mode is not None
            and self.old_mode != self.new_mode
        )

    @property
    def old_no_newline_at_eof(self) -> bool:
        return _last_flag(self.hunks, old_side=True)

    @property
    def new_no_newline_at_eof(self) -> bool:
        return _last_flag(self.hunks, old_side=False)


def _last_flag(hunks: list[Hunk], old_side: bool) -> bool:
    if not hunks:
        return False
    side = hunks[-1].old_lines if old_side else hunks[-1].new_lines
    return bool(side) and side[-1].no_newline


@dataclass
class ParsedPatch:
    files: list[FileDiff] = field(default_factory=list)

    def __iter__(self):
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    @property
    def paths(self) -> list[str]:
        seen: list[str] = []
        for file_diff in self.files:
            for path in (file_diff.old_path, file_diff.new_path):
                if path and path not in seen:
                    seen.append(path)
        return seen
