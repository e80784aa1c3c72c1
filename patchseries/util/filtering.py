import logging
import os
import re
import shutil
from pathlib import Path

from patchseries.errors import BadPathFilterError

logger = logging.getLogger(__name__)

DEFAULT_INCLUDE = ".*"
DEFAULT_EXCLUDE = r"^package\.json$"


def make_regexp(
    pattern: str | None,
    name: str,
    default: str,
    case_sensitive: bool = False,
) -> re.Pattern:
    """Compile an --include/--exclude option; an empty value means the default."""
    if not pattern:
        pattern = default
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise BadPathFilterError(name, pattern, str(e)) from e


def remove_ignored_files(
    root: Path,
    include: re.Pattern,
    exclude: re.Pattern,
) -> list[str]:
    """
    Delete every file under root whose path (relative, '/'-separated) does not
    match `include` or does match `exclude`. Returns the removed paths.
    """

    root = Path(root)
    removed: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = Path(dirpath, filename)
            rel = path.relative_to(root).as_posix()
            if include.search(rel) and not exclude.search(rel):
                continue
            path.unlink()
            removed.append(rel)

    if removed:
        logger.debug("Filtered %d files out of %s", len(removed), root)
    return sorted(removed)


def remove_nested_dirs(root: Path, names: set[str]) -> None:
    """Remove every directory under root whose name is in `names`, at any depth."""
    root = Path(root)
    for dirpath, dirnames, _filenames in os.walk(root):
        for dirname in list(dirnames):
            if dirname in names:
                path = Path(dirpath, dirname)
                if path.is_symlink():
                    path.unlink()
                else:
                    shutil.rmtree(path)
                dirnames.remove(dirname)
