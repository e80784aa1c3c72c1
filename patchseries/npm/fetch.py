import io
import logging
import os
import re
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from urllib.parse import quote

import httpx
import yaml

from patchseries.errors import FetchError
from patchseries.series.details import PackageDetails

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"


def registry_from_project(app_root: Path) -> str | None:
    """Registry configured in .yarnrc.yml (npmRegistryServer) or .npmrc (registry=)."""
    yarnrc = Path(app_root, ".yarnrc.yml")
    if yarnrc.is_file():
        try:
            config = yaml.safe_load(yarnrc.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.warning("Ignoring unreadable %s: %s", yarnrc, e)
            config = {}
        if isinstance(config, dict) and config.get("npmRegistryServer"):
            return str(config["npmRegistryServer"])

    npmrc = Path(app_root, ".npmrc")
    if npmrc.is_file():
        for line in npmrc.read_text(encoding="utf-8").splitlines():
            match = re.match(r"^\s*registry\s*=\s*(\S+)\s*$", line)
            if match:
                return match.group(1)
    return None


def _member_target(name: str) -> PurePosixPath | None:
    # npm tarballs wrap everything in a single top-level directory
    parts = PurePosixPath(name).parts[1:]
    if not parts or any(part in ("..", "") for part in parts) or name.startswith("/"):
        return None
    return PurePosixPath(*parts)


def extract_tarball(data: bytes, dest: Path) -> int:
    """
    Extract a gzipped package tarball into dest, dropping the top-level
    directory. Regular files, directories and relative symlinks are
    extracted. Returns the number of regular files written.
    """

    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    count = 0
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            for member in tar.getmembers():
                target = _member_target(member.name)
                if target is None:
                    logger.debug("Skipping tarball entry %s", member.name)
                    continue
                path = dest.joinpath(*target.parts)
                if member.isdir():
                    path.mkdir(parents=True, exist_ok=True)
                    continue
                if member.issym():
                    link = PurePosixPath(member.linkname)
                    if link.is_absolute() or ".." in link.parts:
                        logger.debug("Skipping symlink %s -> %s", member.name, member.linkname)
                        continue
                    path.parent.mkdir(parents=True, exist_ok=True)
                    os.symlink(member.linkname, path)
                    continue
                if not member.isfile():
                    logger.debug("Skipping non-regular tarball entry %s", member.name)
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(extracted.read())
                path.chmod(0o755 if member.mode & 0o111 else 0o644)
                count += 1
    except tarfile.TarError as e:
        raise FetchError(f"Could not extract package tarball: {e}") from e
    return count


class RegistryFetcher:
    """Places a clean, unmodified copy of a package into a directory."""

    def __init__(
        self,
        app_root: Path,
        registry_url: str | None = None,
        timeout_sec: int = 60,
        transport: httpx.BaseTransport | None = None,
    ):
        self.app_root = Path(app_root)
        self.registry_url = (registry_url or registry_from_project(self.app_root) or DEFAULT_REGISTRY_URL).rstrip("/")
        self.timeout_sec = timeout_sec
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout_sec,
            follow_redirects=True,
            transport=self._transport,
        )

    def _get(self, client: httpx.Client, url: str) -> httpx.Response:
        try:
            response = client.get(url)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchError(f"Request to {url} timed out after {self.timeout_sec} seconds", details={"url": url}) from e
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Request to {url} failed with status {e.response.status_code}",
                details={"url": url, "status_code": e.response.status_code},
            ) from e
        except httpx.RequestError as e:
            raise FetchError(f"Request to {url} failed: {e}", details={"url": url}) from e
        return response

    def tarball_url(self, client: httpx.Client, package: PackageDetails, version: str) -> str:
        url = f"{self.registry_url}/{quote(package.name, safe='@')}/{quote(version)}"
        metadata = self._get(client, url).json()
        tarball = (metadata.get("dist") or {}).get("tarball") if isinstance(metadata, dict) else None
        if not tarball:
            raise FetchError(f"Registry metadata for {package.name}@{version} has no tarball", details={"url": url})
        return tarball

    def fetch(self, package: PackageDetails, resolution: str, dest: Path) -> None:
        dest = Path(dest)
        logger.info("Fetching clean copy of %s (%s)", package.name, resolution)

        if resolution.startswith("file:"):
            source = Path(resolution[len("file:"):])
            if not source.is_absolute():
                source = self.app_root / source
            if source.is_dir():
                shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
                return
            if source.is_file():
                extract_tarball(source.read_bytes(), dest)
                return
            raise FetchError(f"Local package source {source} does not exist", details={"source": str(source)})

        with self._client() as client:
            if re.match(r"^https?://", resolution):
                url = resolution
            else:
                url = self.tarball_url(client, package, resolution)
            data = self._get(client, url).content

        count = extract_tarball(data, dest)
        logger.debug("Extracted %d files of %s into %s", count, package.name, dest)
