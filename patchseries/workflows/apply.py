import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from patchseries.errors import HunkApplicationError, IntegrityMismatchError
from patchseries.patch.apply import ApplyResult, FileApplyResult, apply_patch
from patchseries.patch.models import ParsedPatch
from patchseries.patch.parse import parse_patch
from patchseries.series.catalog import scan_patch_dir
from patchseries.series.details import PatchedPackageDetails
from patchseries.series.state import PatchState, SeriesState, patch_state_for
from patchseries.util.hashing import hash_file
from patchseries.workflows.context import ProjectContext

logger = logging.getLogger(__name__)

REJECTS_FILE_NAME = "patch-series-rejects.json"


@dataclass
class PatchApplication:
    result: ApplyResult | None
    already_applied: bool = False

    @property
    def partial(self) -> bool:
        return self.result is not None and not self.result.ok


@dataclass
class ApplyReport:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    rejections: dict[str, list[FileApplyResult]] = field(default_factory=dict)
    rejects_path: Path | None = None

    def exit_code(self, error_on_fail: bool = True, error_on_warn: bool = False) -> int:
        if self.errors and error_on_fail:
            return 1
        if self.warnings and error_on_warn:
            return 1
        return 0


def apply_patch_file(
    context: ProjectContext,
    patch: PatchedPackageDetails,
    reverse: bool = False,
    best_effort: bool = False,
    check_applied: bool = False,
) -> PatchApplication:
    """
    Apply (or un-apply) one patch file to the installed dependency tree.

    If the patch does not apply but its inverse does, the tree is already in
    the target state and nothing is written. With check_applied the inverse
    is tried first: a patch whose old side still matches after it was applied
    (lines appended at the end of a file, for example) would otherwise go in
    a second time. Only patches without series state to track them need this.

    Raises:
        HunkApplicationError: neither direction applies (normal mode)
        MalformedPatchError: the patch file cannot be parsed
    """

    text = Path(context.patch_dir, patch.patch_filename).read_text(encoding="utf-8", errors="surrogateescape")
    parsed = parse_patch(text)
    max_fuzz = context.settings.max_fuzz

    if check_applied and not reverse and _applies(parsed, context.app_root, reverse=True, max_fuzz=max_fuzz):
        logger.info("%s is already applied", patch.patch_filename)
        return PatchApplication(None, already_applied=True)

    try:
        result = apply_patch(
            parsed,
            context.app_root,
            reverse=reverse,
            best_effort=best_effort,
            max_fuzz=max_fuzz,
        )
        return PatchApplication(result)
    except HunkApplicationError as error:
        if not _applies(parsed, context.app_root, reverse=not reverse, max_fuzz=max_fuzz):
            raise error from None
        logger.info("%s is already %s", patch.patch_filename, "reversed" if reverse else "applied")
        return PatchApplication(None, already_applied=True)


def _applies(parsed: ParsedPatch, target_root: Path, reverse: bool, max_fuzz: int) -> bool:
    try:
        apply_patch(parsed, target_root, reverse=reverse, dry_run=True, max_fuzz=max_fuzz)
    except HunkApplicationError:
        return False
    return True


def _version_mismatch_warning(patch: PatchedPackageDetails, installed: str) -> str:
    return (
        f"Patch file {patch.patch_filename} was made for {patch.path_specifier}@{patch.version} "
        f"but {installed} is installed. It applied, but recreate it with "
        f"`patch-series make {patch.path_specifier}` to stop seeing this warning."
    )


def _failure_message(patch: PatchedPackageDetails, installed: str, series_length: int, error: Exception) -> str:
    if series_length > 1:
        return (
            f"Failed to apply patch file {patch.patch_filename}; later patches for "
            f"{patch.human_readable_path_specifier} were not applied. "
            "Fix or delete the patch file, or rerun with --partial.\n" + str(error)
        )
    if installed == patch.version:
        return (
            f"Failed to apply patch for package {patch.human_readable_path_specifier}. "
            f"The patch file {patch.patch_filename} may be broken.\n" + str(error)
        )
    return (
        f"Failed to apply patch for package {patch.human_readable_path_specifier}: "
        f"the patch was made for version {patch.version} but {installed} is installed.\n" + str(error)
    )


def _already_applied_prefix(
    context: ProjectContext,
    patches: list[PatchedPackageDetails],
    state: SeriesState,
) -> list[PatchedPackageDetails]:
    applied: list[PatchedPackageDetails] = []
    for entry, patch in zip(state.patches, patches):
        if not entry.did_apply:
            break
        current = hash_file(Path(context.patch_dir, patch.patch_filename))
        if current != entry.patch_content_hash:
            logger.error("The patches for %s have changed since they were applied", patch.path_specifier)
            raise IntegrityMismatchError(patch.patch_filename, entry.patch_content_hash, current)
        applied.append(patch)
    return applied


def apply_patches_for_package(
    context: ProjectContext,
    patches: list[PatchedPackageDetails],
    report: ApplyReport,
    reverse: bool = False,
    best_effort: bool = False,
) -> None:
    """
    Bring one package's series up to date (or tear it down with reverse).

    For a multi-patch series the stored state says which leading patches are
    already in place; those are skipped after their fingerprints are checked.
    The state is rewritten afterwards to describe what is applied now.
    """

    head = patches[0]
    path_specifier = head.path_specifier
    store = context.store

    with store.lock(path_specifier):
        state = store.load(path_specifier) if len(patches) > 1 else None

        already: list[PatchedPackageDetails] = []
        if state is not None:
            already = _already_applied_prefix(context, patches, state)

        if reverse:
            if state is not None:
                pending = list(reversed(already))
            else:
                pending = list(reversed(patches))
            done: list[PatchedPackageDetails] = []
        else:
            pending = patches[len(already):]
            done = list(already)
            report.skipped.extend(p.patch_filename for p in already)

        failed: PatchedPackageDetails | None = None
        for patch in pending:
            installed = context.resolver.installed_version(patch)
            if installed is None:
                if patch.is_dev_only:
                    logger.info("Skipping dev-only %s@%s", path_specifier, patch.version)
                    report.skipped.append(patch.patch_filename)
                    continue
                report.errors.append(
                    f"Patch file found for package {patch.human_readable_path_specifier} "
                    f"which is not present at {patch.path}"
                )
                break

            try:
                application = apply_patch_file(
                    context,
                    patch,
                    reverse=reverse,
                    best_effort=best_effort,
                    check_applied=state is None,
                )
            except HunkApplicationError as error:
                report.errors.append(_failure_message(patch, installed, len(patches), error))
                failed = patch
                break

            if application.partial:
                report.rejections[patch.patch_filename] = application.result.rejections
                report.warnings.append(
                    f"Patch file {patch.patch_filename} was only partially applied; "
                    f"see {REJECTS_FILE_NAME} for the rejected hunks."
                )
                failed = patch
                break

            if application.already_applied:
                done.append(patch)
                report.skipped.append(patch.patch_filename)
                continue

            done.append(patch)
            report.applied.append(patch.patch_filename)
            if installed != patch.version:
                report.warnings.append(_version_mismatch_warning(patch, installed))
            if application.result is not None:
                for path, hunk in application.result.fuzzy_hunks:
                    report.warnings.append(
                        f"Hunk {hunk.index} of {path} in {patch.patch_filename} applied "
                        f"{abs(hunk.offset)} lines {'below' if hunk.offset > 0 else 'above'} "
                        "where it was expected; the patch was made against a different base."
                    )
            logger.info("%s %s", "Reversed" if reverse else "Applied", patch.patch_filename)

        if len(patches) <= 1:
            return

        if reverse:
            if state is None:
                return
            if len(done) == len(pending):
                store.clear(path_specifier)
                return
            if done:
                still_applied = patches[:patches.index(done[-1])]
                store.save(
                    path_specifier,
                    SeriesState(patches=[patch_state_for(context.patch_dir, p) for p in still_applied]),
                )
            return

        next_state: list[PatchState] = [patch_state_for(context.patch_dir, p) for p in done]
        if failed is not None:
            next_state.append(patch_state_for(context.patch_dir, failed, did_apply=False))
        store.save(path_specifier, SeriesState(patches=next_state, is_rebasing=failed is not None))


def write_rejects_report(app_root: Path, rejections: dict[str, list[FileApplyResult]]) -> Path:
    path = Path(app_root, REJECTS_FILE_NAME)
    payload = {
        "patches": {
            filename: [file_result.model_dump(mode="json") for file_result in files]
            for filename, files in rejections.items()
        }
    }
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote rejected hunks to %s", path)
    return path


def apply_patches_for_app(
    context: ProjectContext,
    reverse: bool = False,
    best_effort: bool = False,
) -> ApplyReport:
    """Apply every patch series found in the project's patch directory."""

    report = ApplyReport()
    catalog = scan_patch_dir(context.patch_dir)
    report.warnings.extend(catalog.warnings)

    if not catalog.series:
        logger.info("No patch files found in %s", context.patch_dir)
        return report

    for path_specifier, patches in catalog.series.items():
        logger.debug("Processing %d patches for %s", len(patches), path_specifier)
        apply_patches_for_package(context, patches, report, reverse=reverse, best_effort=best_effort)

    if best_effort and report.rejections:
        report.rejects_path = write_rejects_report(context.app_root, report.rejections)

    return report
