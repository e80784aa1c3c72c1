from patchseries.series.catalog import PatchCatalog, scan_patch_dir
from patchseries.series.details import (
    PackageDetails,
    PatchedPackageDetails,
    details_from_patch_filename,
    make_patch_filename,
    package_details_from_specifier,
)
from patchseries.series.state import (
    PatchState,
    SeriesState,
    StateStore,
    patch_state_for,
    verify_applied_patches,
)

__all__ = [
    "PatchCatalog",
    "scan_patch_dir",
    "PackageDetails",
    "PatchedPackageDetails",
    "details_from_patch_filename",
    "make_patch_filename",
    "package_details_from_specifier",
    "PatchState",
    "SeriesState",
    "StateStore",
    "patch_state_for",
    "verify_applied_patches",
]
