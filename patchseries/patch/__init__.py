"""Unified diff model, parser and applier."""

from patchseries.patch.apply import (
    DEFAULT_MAX_FUZZ,
    ApplyResult,
    FileApplyResult,
    HunkResult,
    HunkStatus,
    apply_patch,
)
from patchseries.patch.models import (
    ChangeKind,
    FileDiff,
    Hunk,
    HunkLine,
    LineKind,
    ParsedPatch,
)
from patchseries.patch.parse import parse_patch
from patchseries.patch.reverse import reverse_patch

__all__ = [
    "DEFAULT_MAX_FUZZ",
    "ApplyResult",
    "FileApplyResult",
    "HunkResult",
    "HunkStatus",
    "apply_patch",
    "ChangeKind",
    "FileDiff",
    "Hunk",
    "HunkLine",
    "LineKind",
    "ParsedPatch",
    "parse_patch",
    "reverse_patch",
]
