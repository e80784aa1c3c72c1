from patchseries.patch.models import (
    ChangeKind,
    FileDiff,
    Hunk,
    HunkLine,
    LineKind,
    ParsedPatch,
)

_SWAPPED = {
    LineKind.CONTEXT: LineKind.CONTEXT,
    LineKind.ADDED: LineKind.REMOVED,
    LineKind.REMOVED: LineKind.ADDED,
}


def reverse_hunk(hunk: Hunk) -> Hunk:
    swapped = [
        HunkLine(kind=_SWAPPED[line.kind], text=line.text, no_newline=line.no_newline)
        for line in hunk.lines
    ]

    # within every run of changed lines, removals come before additions
    lines: list[HunkLine] = []
    run: list[HunkLine] = []
    for line in swapped + [None]:
        if line is None or line.kind == LineKind.CONTEXT:
            lines.extend(l for l in run if l.kind == LineKind.REMOVED)
            lines.extend(l for l in run if l.kind == LineKind.ADDED)
            run = []
            if line is not None:
                lines.append(line)
        else:
            run.append(line)

    return Hunk(
        old_start=hunk.new_start,
        old_count=hunk.new_count,
        new_start=hunk.old_start,
        new_count=hunk.old_count,
        lines=lines,
        section=hunk.section,
    )


def reverse_file_diff(file_diff: FileDiff) -> FileDiff:
    kind = {
        ChangeKind.CREATE: ChangeKind.DELETE,
        ChangeKind.DELETE: ChangeKind.CREATE,
    }.get(file_diff.kind, file_diff.kind)

    return FileDiff(
        old_path=file_diff.new_path,
        new_path=file_diff.old_path,
        kind=kind,
        old_mode=file_diff.new_mode,
        new_mode=file_diff.old_mode,
        hunks=[reverse_hunk(hunk) for hunk in file_diff.hunks],
        before_hash=file_diff.after_hash,
        after_hash=file_diff.before_hash,
    )


def reverse_patch(patch: ParsedPatch) -> ParsedPatch:
    """Undo `patch`: file diffs are inverted and replayed in reverse order."""
    return ParsedPatch(files=[reverse_file_diff(f) for f in reversed(patch.files)])
