import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from patchseries.series.details import PatchedPackageDetails, details_from_patch_filename

logger = logging.getLogger(__name__)


@dataclass
class PatchCatalog:
    """Patch files of one patch directory, grouped per package path specifier."""

    patch_dir: Path
    series: dict[str, list[PatchedPackageDetails]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def num_patch_files(self) -> int:
        return sum(len(patches) for patches in self.series.values())

    def for_package(self, path_specifier: str) -> list[PatchedPackageDetails]:
        return list(self.series.get(path_specifier, []))


def _series_warnings(path_specifier: str, patches: list[PatchedPackageDetails]) -> list[str]:
    warnings: list[str] = []
    unnumbered = [p for p in patches if p.sequence_number is None]
    if unnumbered and len(patches) > 1:
        names = ", ".join(p.patch_filename for p in unnumbered)
        warnings.append(
            f"Package {path_specifier} has several patch files but {names} has no sequence number"
        )

    seen: dict[int, str] = {}
    for patch in patches:
        if patch.sequence_number is None:
            continue
        if patch.sequence_number in seen:
            warnings.append(
                f"Patch files {seen[patch.sequence_number]} and {patch.patch_filename} "
                f"share sequence number {patch.sequence_number}"
            )
        seen[patch.sequence_number] = patch.patch_filename
    return warnings


def scan_patch_dir(patch_dir: Path) -> PatchCatalog:
    """
    Read every `*.patch` file name in patch_dir and group the ones that follow
    the naming grammar by package, ordered by sequence number (an unnumbered
    patch counts as 0). Unrecognised names produce a warning and are skipped.
    A missing directory is an empty catalog.
    """

    patch_dir = Path(patch_dir)
    catalog = PatchCatalog(patch_dir=patch_dir)
    if not patch_dir.is_dir():
        logger.debug("Patch directory %s does not exist", patch_dir)
        return catalog

    grouped: dict[str, list[PatchedPackageDetails]] = defaultdict(list)
    for path in sorted(patch_dir.iterdir()):
        if not path.is_file() or not path.name.endswith(".patch"):
            continue
        details = details_from_patch_filename(path.name)
        if details is None:
            message = f"Unrecognized patch file in patches directory {path.name}"
            logger.warning(message)
            catalog.warnings.append(message)
            continue
        grouped[details.path_specifier].append(details)

    for path_specifier in sorted(grouped):
        patches = sorted(grouped[path_specifier], key=lambda p: (p.sort_key, p.patch_filename))
        catalog.series[path_specifier] = patches
        for message in _series_warnings(path_specifier, patches):
            logger.warning(message)
            catalog.warnings.append(message)

    logger.debug("Found %d patch files for %d packages in %s", catalog.num_patch_files, len(catalog.series), patch_dir)
    return catalog
