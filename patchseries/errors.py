from enum import StrEnum
from pathlib import Path


class PatchErrorType(StrEnum):
    MALFORMED_PATCH = "malformed_patch"
    UNSUPPORTED_CHANGE_KIND = "unsupported_change_kind"
    HUNK_APPLICATION_FAILURE = "hunk_application_failure"
    INTEGRITY_MISMATCH = "integrity_mismatch"
    PATH_ESCAPE = "path_escape"
    PACKAGE_NOT_FOUND = "package_not_found"
    NO_CHANGES = "no_changes"
    SERIES_REPLAY = "series_replay"
    REBASE = "rebase"
    STATE_VERSION = "state_version"
    BAD_PATH_FILTER = "bad_path_filter"
    FETCH = "fetch"
    COMMAND = "command"
    UNSUPPORTED_INSTALL_MODE = "unsupported_install_mode"


class PatchSeriesError(Exception):
    def __init__(
        self,
        error_type: PatchErrorType,
        message: str,
        details: dict | None = None
    ):
        super().__init__(message)
        self.error_type = error_type
        self.details = details or {}


class MalformedPatchError(PatchSeriesError):
    """The diff text could not be parsed. `fragment` holds the offending text."""

    def __init__(
        self,
        message: str,
        fragment: str = "",
        line_number: int | None = None
    ):
        super().__init__(
            PatchErrorType.MALFORMED_PATCH,
            message,
            details = {
                "fragment": fragment,
                "line_number": line_number,
            }
        )
        self.fragment = fragment
        self.line_number = line_number


class UnsupportedChangeKindError(PatchSeriesError):
    def __init__(
        self,
        path: str | None,
        mode: str
    ):
        super().__init__(
            PatchErrorType.UNSUPPORTED_CHANGE_KIND,
            f"Unsupported file mode {mode} for {path or '<unknown>'}: symbolic links cannot be patched. "
            "Use --include/--exclude to leave them out of the patch.",
            details = {
                "path": path,
                "mode": mode,
            }
        )
        self.path = path
        self.mode = mode


class HunkApplicationError(PatchSeriesError):
    def __init__(
        self,
        path: str,
        message: str,
        hunk_index: int | None = None,
        source: str = ""
    ):
        super().__init__(
            PatchErrorType.HUNK_APPLICATION_FAILURE,
            message,
            details = {
                "path": path,
                "hunk_index": hunk_index,
                "source": source,
            }
        )
        self.path = path
        self.hunk_index = hunk_index
        self.source = source


class IntegrityMismatchError(PatchSeriesError):
    def __init__(
        self,
        patch_filename: str,
        expected_hash: str,
        actual_hash: str | None
    ):
        if actual_hash is None:
            message = (
                f"Expected patch file {patch_filename} to exist but it is missing. "
                "Reinstall your dependencies before continuing."
            )
        else:
            message = (
                f"Patch file {patch_filename} has changed since it was applied. "
                "Reinstall your dependencies before continuing."
            )
        super().__init__(
            PatchErrorType.INTEGRITY_MISMATCH,
            message,
            details = {
                "patch_filename": patch_filename,
                "expected_hash": expected_hash,
                "actual_hash": actual_hash,
            }
        )
        self.patch_filename = patch_filename
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class PathEscapeError(PatchSeriesError):
    def __init__(self, candidate: str, root: Path):
        super().__init__(
            PatchErrorType.PATH_ESCAPE,
            f"Path {candidate} is not inside {root}",
            details = {"candidate": candidate, "root": str(root)}
        )


class PackageNotFoundError(PatchSeriesError):
    def __init__(self, path_specifier: str, package_dir: Path):
        super().__init__(
            PatchErrorType.PACKAGE_NOT_FOUND,
            f"No such package {path_specifier}\n\n  Directory not found: {package_dir}",
            details = {"path_specifier": path_specifier, "package_dir": str(package_dir)}
        )


class NoChangesError(PatchSeriesError):
    def __init__(self, path_specifier: str):
        super().__init__(
            PatchErrorType.NO_CHANGES,
            f"Not creating patch file for package '{path_specifier}': there don't appear to be any changes.",
            details = {"path_specifier": path_specifier}
        )


class SeriesReplayError(PatchSeriesError):
    def __init__(self, patch_filename: str, path_specifier: str):
        super().__init__(
            PatchErrorType.SERIES_REPLAY,
            f"Failed to apply patch {patch_filename} to {path_specifier}",
            details = {"patch_filename": patch_filename, "path_specifier": path_specifier}
        )


class RebaseError(PatchSeriesError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(PatchErrorType.REBASE, message, details = details)


class StateVersionError(PatchSeriesError):
    def __init__(self, path: Path, found: object):
        super().__init__(
            PatchErrorType.STATE_VERSION,
            f"State file {path} was written by an incompatible version ({found}). "
            "Fully reinstall your dependencies to continue.",
            details = {"path": str(path), "found": found}
        )


class BadPathFilterError(PatchSeriesError):
    def __init__(self, name: str, pattern: str, reason: str):
        super().__init__(
            PatchErrorType.BAD_PATH_FILTER,
            f"Invalid format for option --{name}: {pattern!r} is not a valid regular expression ({reason})",
            details = {"name": name, "pattern": pattern}
        )


class FetchError(PatchSeriesError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(PatchErrorType.FETCH, message, details = details)


class CommandError(PatchSeriesError):
    def __init__(self, cmd: list[str], exit_code: int | None, stderr: str):
        super().__init__(
            PatchErrorType.COMMAND,
            f"Command {' '.join(cmd)} failed with exit code {exit_code}: {stderr.strip()}",
            details = {"cmd": cmd, "exit_code": exit_code, "stderr": stderr}
        )
        self.exit_code = exit_code
        self.stderr = stderr


class UnsupportedInstallModeError(PatchSeriesError):
    def __init__(self, message: str):
        super().__init__(PatchErrorType.UNSUPPORTED_INSTALL_MODE, message)
