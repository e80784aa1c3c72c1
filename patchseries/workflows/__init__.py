from patchseries.workflows.apply import (
    ApplyReport,
    apply_patch_file,
    apply_patches_for_app,
    apply_patches_for_package,
)
from patchseries.workflows.context import ProjectContext
from patchseries.workflows.make import MakeMode, MakeResult, make_patch
from patchseries.workflows.rebase import RebaseResult, rebase

__all__ = [
    "ApplyReport",
    "apply_patch_file",
    "apply_patches_for_app",
    "apply_patches_for_package",
    "ProjectContext",
    "MakeMode",
    "MakeResult",
    "make_patch",
    "RebaseResult",
    "rebase",
]
