import hashlib
import json
import logging
import os
import re
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from patchseries.errors import IntegrityMismatchError, StateVersionError
from patchseries.series.details import PatchedPackageDetails
from patchseries.util.hashing import hash_file

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class PatchState(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
    )

    patch_filename: str = Field(alias="patchFilename")
    did_apply: bool = Field(alias="didApply")
    patch_content_hash: str = Field(alias="patchContentHash")


class SeriesState(BaseModel):
    """
    What is known to be applied for one package. Absence of a stored state
    means the package is clean: at most one patch, fully applied, no rebase.
    """

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
    )

    version: int = STATE_VERSION
    patches: list[PatchState] = Field(default_factory=list)
    is_rebasing: bool = Field(default=False, alias="isRebasing")

    @property
    def num_applied(self) -> int:
        return sum(1 for p in self.patches if p.did_apply)

    @property
    def all_applied(self) -> bool:
        return all(p.did_apply for p in self.patches)


def patch_state_for(patch_dir: Path, patch: PatchedPackageDetails, did_apply: bool = True) -> PatchState:
    return PatchState(
        patch_filename=patch.patch_filename,
        did_apply=did_apply,
        patch_content_hash=hash_file(Path(patch_dir, patch.patch_filename)),
    )


def verify_applied_patches(state: SeriesState, patch_dir: Path) -> None:
    """
    Recompute the fingerprint of every patch the state records as applied.

    Raises:
        IntegrityMismatchError: a recorded patch file is missing or changed
    """

    for entry in state.patches:
        if not entry.did_apply:
            continue
        path = Path(patch_dir, entry.patch_filename)
        if not path.is_file():
            raise IntegrityMismatchError(entry.patch_filename, entry.patch_content_hash, None)
        actual = hash_file(path)
        if actual != entry.patch_content_hash:
            logger.error("Patch %s changed since it was applied", entry.patch_filename)
            raise IntegrityMismatchError(entry.patch_filename, entry.patch_content_hash, actual)


class StateStore:
    """
    One JSON document per (patch directory, package path specifier), stored
    under state_dir. Reads and writes for a key are serialised with a file
    lock; `lock()` may be held around a whole read-modify-write cycle.
    """

    def __init__(self, state_dir: Path, patch_dir: str):
        self.state_dir = Path(state_dir)
        self.patch_dir = patch_dir
        self._locks: dict[str, FileLock] = {}

    def path_for(self, path_specifier: str) -> Path:
        key = f"{self.patch_dir}\0{path_specifier}"
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
        readable = re.sub(r"[^\w.@-]+", "+", path_specifier)
        return self.state_dir / f"{readable}-{digest}.json"

    def _lock_for(self, path_specifier: str) -> FileLock:
        path = self.path_for(path_specifier)
        if path_specifier not in self._locks:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._locks[path_specifier] = FileLock(str(path) + ".lock")
        return self._locks[path_specifier]

    @contextmanager
    def lock(self, path_specifier: str):
        with self._lock_for(path_specifier):
            yield

    def load(self, path_specifier: str) -> SeriesState | None:
        path = self.path_for(path_specifier)
        if not path.is_file():
            return None

        with self.lock(path_specifier):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                logger.error("State file %s is not valid JSON: %s", path, e)
                raise StateVersionError(path, "unreadable") from e

        found = raw.get("version") if isinstance(raw, dict) else None
        if found != STATE_VERSION:
            raise StateVersionError(path, found)
        try:
            return SeriesState.model_validate(raw)
        except ValidationError as e:
            logger.error("State file %s is invalid: %s", path, e)
            raise StateVersionError(path, found) from e

    def save(self, path_specifier: str, state: SeriesState) -> None:
        path = self.path_for(path_specifier)
        payload = json.dumps(state.model_dump(by_alias=True), indent=2) + "\n"
        with self.lock(path_specifier):
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)
        logger.debug("Saved state for %s (%d patches, rebasing=%s)", path_specifier, len(state.patches), state.is_rebasing)

    def clear(self, path_specifier: str) -> None:
        path = self.path_for(path_specifier)
        with self.lock(path_specifier):
            path.unlink(missing_ok=True)
        logger.debug("Cleared state for %s", path_specifier)
