import gzip
import json
import logging
import os
import shutil
import tempfile
import traceback
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from patchseries.errors import (
    HunkApplicationError,
    MalformedPatchError,
    NoChangesError,
    PackageNotFoundError,
    RebaseError,
    SeriesReplayError,
)
from patchseries.patch.apply import apply_patch
from patchseries.patch.parse import parse_patch
from patchseries.series.catalog import scan_patch_dir
from patchseries.series.details import (
    PackageDetails,
    PatchedPackageDetails,
    make_patch_filename,
    package_details_from_specifier,
    sanitize_sequence_name,
)
from patchseries.series.state import SeriesState, patch_state_for, verify_applied_patches
from patchseries.util.filtering import (
    DEFAULT_EXCLUDE,
    DEFAULT_INCLUDE,
    make_regexp,
    remove_ignored_files,
    remove_nested_dirs,
)
from patchseries.workflows.apply import apply_patch_file
from patchseries.workflows.context import ProjectContext

logger = logging.getLogger(__name__)

ERROR_DIAGNOSTIC_FILE_NAME = "patch-series-error.json.gz"
DEFAULT_SEQUENCE_NAME = "initial"


class MakeMode(StrEnum):
    OVERWRITE_LAST = "overwrite_last"
    APPEND = "append"


@dataclass
class MakeResult:
    patch_filename: str
    renamed: list[tuple[str, str]] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    fast_forwarded: list[str] = field(default_factory=list)
    state: SeriesState | None = None


@dataclass
class _Plan:
    mode: MakeMode
    name: str | None
    state: SeriesState | None
    is_rebasing: bool
    existing: list[PatchedPackageDetails]
    to_replay: list[PatchedPackageDetails]
    num_patches_after: int


def _plan(
    context: ProjectContext,
    package: PackageDetails,
    mode: MakeMode,
    name: str | None,
) -> _Plan:
    state = context.store.load(package.path_specifier)
    is_rebasing = state is not None and state.is_rebasing

    # with nothing applied there is no previous patch to overwrite
    if is_rebasing and state.num_applied == 0 and mode == MakeMode.OVERWRITE_LAST:
        mode = MakeMode.APPEND
        name = DEFAULT_SEQUENCE_NAME

    if is_rebasing:
        verify_applied_patches(state, context.patch_dir)

    existing = scan_patch_dir(context.patch_dir).for_package(package.path_specifier)

    if is_rebasing:
        applied = state.num_applied
        if mode == MakeMode.APPEND:
            to_replay = existing[:applied]
        elif state.patches[-1].did_apply:
            to_replay = existing[:applied - 1]
        else:
            to_replay = existing[:applied]
    elif mode == MakeMode.APPEND:
        to_replay = list(existing)
    else:
        to_replay = existing[:-1]

    if mode == MakeMode.APPEND or not existing:
        num_patches_after = len(existing) + 1
    else:
        num_patches_after = len(existing)

    return _Plan(mode, name, state, is_rebasing, existing, to_replay, num_patches_after)


def _prepare_snapshot(package_root: Path, include, exclude, state_dir_name: str) -> None:
    remove_nested_dirs(package_root, {"node_modules", ".git", state_dir_name})
    remove_ignored_files(package_root, include, exclude)


def _write_error_diagnostic(app_root: Path, error: Exception, diff_text: str) -> Path:
    out_path = Path(app_root, ERROR_DIAGNOSTIC_FILE_NAME)
    payload = {
        "error": {
            "message": str(error),
            "stack": "".join(traceback.format_exception(error)),
        },
        "patch": diff_text,
    }
    out_path.write_bytes(gzip.compress(json.dumps(payload).encode("utf-8")))
    return out_path


def _take_diff(
    context: ProjectContext,
    package: PackageDetails,
    package_dir: Path,
    to_replay: list[PatchedPackageDetails],
    include,
    exclude,
) -> str:
    state_dir_name = Path(context.settings.state_dir).name

    with tempfile.TemporaryDirectory(prefix="patch-series-") as scratch:
        clean_root = Path(scratch, "clean")
        modified_root = Path(scratch, "modified")
        clean_package = clean_root / package.path
        modified_package = modified_root / package.path

        resolution = context.resolver.resolution(package)
        clean_package.mkdir(parents=True)
        context.fetcher.fetch(package, resolution, clean_package)
        _prepare_snapshot(clean_package, include, exclude, state_dir_name)

        for patch in to_replay:
            text = Path(context.patch_dir, patch.patch_filename).read_text(encoding="utf-8", errors="surrogateescape")
            try:
                apply_patch(parse_patch(text), clean_root, max_fuzz=context.settings.max_fuzz)
            except HunkApplicationError as e:
                raise SeriesReplayError(patch.patch_filename, package.path_specifier) from e
            logger.debug("Replayed %s onto clean copy", patch.patch_filename)

        modified_package.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            os.path.realpath(package_dir),
            modified_package,
            symlinks=True,
            ignore=shutil.ignore_patterns("node_modules", ".git"),
        )
        _prepare_snapshot(modified_package, include, exclude, state_dir_name)

        return context.differ.diff(clean_root, modified_root)


def _rename_patch(context: ProjectContext, old: str, new: str, result: MakeResult) -> None:
    logger.info("Renaming %s to %s", old, new)
    os.replace(Path(context.patch_dir, old), Path(context.patch_dir, new))
    result.renamed.append((old, new))


def _nudge(
    context: ProjectContext,
    package: PackageDetails,
    later: list[PatchedPackageDetails],
    sequence_number: int,
    result: MakeResult,
) -> None:
    """Shift the sequence numbers of `later` up so they follow sequence_number."""
    if not later or later[0].sequence_number is None or later[0].sequence_number > sequence_number:
        return

    targets = [
        make_patch_filename(package, p.version, number, p.sequence_name, dev_only=p.is_dev_only)
        for number, p in enumerate(later, start=sequence_number + 1)
    ]
    # highest first so no rename lands on a file that has not moved yet
    for patch, target in reversed(list(zip(later, targets))):
        _rename_patch(context, patch.patch_filename, target, result)


def make_patch(
    context: ProjectContext,
    path_specifier: str,
    mode: MakeMode = MakeMode.OVERWRITE_LAST,
    name: str | None = None,
    include: str | None = None,
    exclude: str | None = None,
    case_sensitive: bool = False,
) -> MakeResult:
    """
    Create or update a patch file for one package from the changes made to
    its installed copy.

    The package's clean published copy is fetched into a scratch directory,
    the series patches that precede the new one are replayed onto it, and
    the difference to the installed copy becomes the patch. While a rebase
    is in progress the patches after the new one are then reapplied to the
    installed copy.

    Raises:
        PackageNotFoundError: the package is not installed
        IntegrityMismatchError: a recorded patch changed during a rebase
        SeriesReplayError: an earlier patch no longer applies to the clean copy
        NoChangesError: the installed copy matches the replayed clean copy
        MalformedPatchError: the produced diff could not be parsed
        UnsupportedChangeKindError: the changes involve symbolic links
        RebaseError: a later patch failed to reapply while fast-forwarding
    """

    package = package_details_from_specifier(path_specifier)
    if package is None:
        raise PackageNotFoundError(path_specifier, context.app_root / "node_modules" / path_specifier)

    include_re = make_regexp(include, "include", DEFAULT_INCLUDE, case_sensitive)
    exclude_re = make_regexp(exclude, "exclude", DEFAULT_EXCLUDE, case_sensitive)

    package_dir = context.resolver.package_dir(package)
    version = context.resolver.installed_version(package)
    if version is None:
        raise PackageNotFoundError(path_specifier, package_dir)

    if name is not None:
        name = sanitize_sequence_name(name) or None

    store = context.store
    with store.lock(package.path_specifier):
        plan = _plan(context, package, mode, name)
        logger.info(
            "Creating patch for %s (%s, rebasing=%s, replaying %d patches)",
            package.human_readable_path_specifier, plan.mode, plan.is_rebasing, len(plan.to_replay),
        )

        diff_text = _take_diff(context, package, package_dir, plan.to_replay, include_re, exclude_re)
        if not diff_text:
            if plan.is_rebasing and plan.mode == MakeMode.OVERWRITE_LAST:
                logger.info("To remove a patch file, delete it and reinstall your dependencies from scratch.")
            raise NoChangesError(path_specifier)

        try:
            parse_patch(diff_text)
        except MalformedPatchError as e:
            out_path = _write_error_diagnostic(context.app_root, e, diff_text)
            logger.error("Could not read the diff produced for %s; diagnostic written to %s", path_specifier, out_path)
            raise

        result = MakeResult(patch_filename="")
        existing = plan.existing
        state = plan.state

        if plan.mode == MakeMode.APPEND and not plan.is_rebasing and len(existing) == 1:
            previous = existing[0]
            if previous.sequence_number is None:
                sequence_name = previous.sequence_name or DEFAULT_SEQUENCE_NAME
                renamed = make_patch_filename(
                    package, previous.version, 1, sequence_name, dev_only=previous.is_dev_only
                )
                _rename_patch(context, previous.patch_filename, renamed, result)
                previous.patch_filename = renamed
                previous.sequence_number = 1
                previous.sequence_name = sequence_name

        if state is not None:
            index = min(len(state.patches), len(existing)) - 1
            last = existing[index] if index >= 0 else None
        else:
            last = existing[-1] if existing else None

        if plan.mode == MakeMode.APPEND:
            sequence_name = plan.name
            sequence_number = ((last.sequence_number if last else None) or 0) + 1
        else:
            sequence_name = last.sequence_name if last else None
            sequence_number = last.sequence_number if last else None

        patch_filename = make_patch_filename(
            package,
            version,
            sequence_number,
            sequence_name,
            dev_only=bool(last and last.is_dev_only and plan.mode == MakeMode.OVERWRITE_LAST),
        )
        result.patch_filename = patch_filename

        if plan.mode == MakeMode.OVERWRITE_LAST and last is not None and last.patch_filename != patch_filename:
            Path(context.patch_dir, last.patch_filename).unlink(missing_ok=True)
            result.removed.append(last.patch_filename)
            logger.info("Removed superseded patch file %s", last.patch_filename)

        if plan.is_rebasing and plan.mode == MakeMode.APPEND:
            _nudge(context, package, existing[len(state.patches):], sequence_number, result)

        context.patch_dir.mkdir(parents=True, exist_ok=True)
        Path(context.patch_dir, patch_filename).write_text(diff_text, encoding="utf-8", errors="surrogateescape")
        logger.info("Created file %s", Path(context.settings.patch_dir, patch_filename))

        current = scan_patch_dir(context.patch_dir).for_package(package.path_specifier)
        position = next(i for i, p in enumerate(current) if p.patch_filename == patch_filename)
        next_state = [patch_state_for(context.patch_dir, p) for p in current[:position + 1]]

        failed: tuple[PatchedPackageDetails, Exception] | None = None
        if plan.is_rebasing:
            later = current[position + 1:]
            if later:
                logger.warning("Fast forwarding %d patches", len(later))
            for patch in later:
                try:
                    apply_patch_file(context, patch)
                except HunkApplicationError as e:
                    logger.error("Failed to reapply %s", patch.patch_filename)
                    next_state.append(patch_state_for(context.patch_dir, patch, did_apply=False))
                    failed = (patch, e)
                    break
                next_state.append(patch_state_for(context.patch_dir, patch))
                result.fast_forwarded.append(patch.patch_filename)
                logger.warning("Reapplied %s", patch.patch_filename)

        if plan.is_rebasing or plan.num_patches_after > 1:
            result.state = SeriesState(patches=next_state, is_rebasing=failed is not None)
            store.save(package.path_specifier, result.state)
        else:
            store.clear(package.path_specifier)

    if failed is not None:
        patch, error = failed
        raise RebaseError(
            f"Failed to apply patch file {patch.patch_filename} while fast forwarding. "
            "Fix the installed package and run `patch-series make` again, "
            "or delete the patch file.\n" + str(error),
            details={"patch_filename": patch.patch_filename},
        )

    return result
