import logging
from dataclasses import dataclass, field
from pathlib import PurePath

from patchseries.errors import HunkApplicationError, RebaseError
from patchseries.series.catalog import scan_patch_dir
from patchseries.series.details import PatchedPackageDetails, package_details_from_specifier
from patchseries.series.state import SeriesState, patch_state_for, verify_applied_patches
from patchseries.workflows.apply import apply_patch_file
from patchseries.workflows.context import ProjectContext

logger = logging.getLogger(__name__)


@dataclass
class RebaseResult:
    target: PatchedPackageDetails | None
    unapplied: list[str] = field(default_factory=list)
    state: SeriesState | None = None


def find_target(patches: list[PatchedPackageDetails], target: str) -> PatchedPackageDetails | None:
    """Match a patch by file name, path, sequence name or sequence number."""
    filename = PurePath(target).name
    for patch in patches:
        if filename == patch.patch_filename:
            return patch
    for patch in patches:
        if patch.sequence_name and patch.sequence_name == target:
            return patch
    if target.isdigit():
        for patch in patches:
            if patch.sequence_number == int(target):
                return patch
    return None


def rebase(context: ProjectContext, path_specifier: str, target: str) -> RebaseResult:
    """
    Un-apply the patches after `target` so the package's installed copy can
    be edited as of that patch; `make` then rewrites the target (or, with
    append, inserts a new patch after it) and reapplies the rest.

    Target "0" un-applies the whole series.

    Raises:
        RebaseError: the series cannot be rebased in its current state
        IntegrityMismatchError: an applied patch changed since it was applied
        HunkApplicationError: a later patch could not be un-applied
    """

    package = package_details_from_specifier(path_specifier)
    if package is None:
        raise RebaseError(f"No such package {path_specifier}", details={"path_specifier": path_specifier})

    store = context.store
    with store.lock(package.path_specifier):
        patches = scan_patch_dir(context.patch_dir).for_package(package.path_specifier)
        if not patches:
            raise RebaseError(
                f"No patch files found for package {package.human_readable_path_specifier}",
                details={"path_specifier": package.path_specifier},
            )

        state = store.load(package.path_specifier)
        if state is None:
            raise RebaseError(
                f"No patch state found for {package.human_readable_path_specifier}. "
                "Did you forget to apply the patches first?",
                details={"path_specifier": package.path_specifier},
            )
        if state.is_rebasing:
            raise RebaseError(
                f"Already rebasing {package.human_readable_path_specifier}. "
                "Make changes to the package and run `patch-series make` to continue.",
                details={"path_specifier": package.path_specifier},
            )
        if len(state.patches) != len(patches) or not state.all_applied:
            raise RebaseError(
                f"Some patches for {package.human_readable_path_specifier} have not been applied. "
                "Reinstall your dependencies and apply the patches before rebasing.",
                details={"path_specifier": package.path_specifier},
            )

        verify_applied_patches(state, context.patch_dir)

        if target == "0":
            chosen = None
            keep = 0
        else:
            chosen = find_target(patches, target)
            if chosen is None:
                raise RebaseError(
                    f"Could not find target patch file {target!r} for {package.human_readable_path_specifier}. "
                    "Give a patch file name, sequence name or sequence number.",
                    details={"target": target, "available": [p.patch_filename for p in patches]},
                )
            keep = patches.index(chosen) + 1

        result = RebaseResult(target=chosen)
        for patch in reversed(patches[keep:]):
            try:
                apply_patch_file(context, patch, reverse=True)
            except HunkApplicationError:
                still_applied = patches[:patches.index(patch) + 1]
                store.save(
                    package.path_specifier,
                    SeriesState(patches=[patch_state_for(context.patch_dir, p) for p in still_applied]),
                )
                raise
            result.unapplied.append(patch.patch_filename)
            logger.info("Un-applied %s", patch.patch_filename)

        result.state = SeriesState(
            patches=[patch_state_for(context.patch_dir, p) for p in patches[:keep]],
            is_rebasing=True,
        )
        store.save(package.path_specifier, result.state)

    if chosen is None:
        logger.info("Un-applied all patches for %s", package.human_readable_path_specifier)
    else:
        logger.info("Rebased %s to %s", package.human_readable_path_specifier, chosen.patch_filename)
    return result
