import logging
import os
from pathlib import Path, PurePosixPath

from patchseries.errors import PathEscapeError

logger = logging.getLogger(__name__)


def resolve_patch_path(
    target_root: Path,
    relative_path: str,
) -> Path:
    """
    Resolve a path named in a diff against the directory the diff applies to.

    The check is lexical: `node_modules` entries are often symlinks into a
    package store, so following links would reject legitimate targets.

    Raises:
        PathEscapeError: if the path is absolute or climbs out of target_root
    """

    target_root = Path(target_root)
    posix = PurePosixPath(relative_path.replace("\\", "/"))

    if posix.is_absolute() or relative_path == "":
        logger.warning("Rejected diff path %r", relative_path)
        raise PathEscapeError(relative_path, target_root)

    normalized = os.path.normpath(posix.as_posix())
    if normalized == ".." or normalized.startswith("../"):
        logger.warning("Path escape attempt: %s is not relative to %s", relative_path, target_root)
        raise PathEscapeError(relative_path, target_root)

    candidate = target_root / normalized
    logger.debug("Resolved diff path: %s -> %s", relative_path, candidate)
    return candidate
