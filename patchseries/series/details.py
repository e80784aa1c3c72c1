"""
Package and patch-file identification.

Patch files are named

    <names>+<version>[+<seq>][+<name>].patch

where <names> are the package names of a nested install path joined with
`++` (a scoped name's `/` is written as `+`), <seq> is a three digit
sequence number and <name> a free-text label. A `.dev.patch` suffix marks a
patch for a dev-only dependency.
"""

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+.*$")
_PATCH_SUFFIX_RE = re.compile(r"(\.dev)?\.patch$")
_SEQUENCE_NAME_RE = re.compile(r"[^\w.-]+")


@dataclass
class PackageDetails:
    name: str
    path: str
    path_specifier: str
    human_readable_path_specifier: str
    is_nested: bool
    package_names: list[str]


@dataclass
class PatchedPackageDetails(PackageDetails):
    version: str
    patch_filename: str
    is_dev_only: bool = False
    sequence_name: str | None = None
    sequence_number: int | None = None

    @property
    def sort_key(self) -> int:
        return self.sequence_number or 0


def _details_from_names(package_names: list[str]) -> PackageDetails:
    return PackageDetails(
        name=package_names[-1],
        path="node_modules/" + "/node_modules/".join(package_names),
        path_specifier="/".join(package_names),
        human_readable_path_specifier=" => ".join(package_names),
        is_nested=len(package_names) > 1,
        package_names=list(package_names),
    )


def package_details_from_specifier(specifier: str) -> PackageDetails | None:
    """
    Interpret a CLI package argument such as `lodash`, `@types/node` or
    `parent/@scope/child` (a package nested under another's node_modules).
    """

    specifier = specifier.strip().replace("\\", "/")
    specifier = re.sub(r"^(node_modules/)+", "", specifier)
    specifier = specifier.replace("/node_modules/", "/").strip("/")
    if not specifier:
        return None

    package_names: list[str] = []
    scope: str | None = None
    for segment in specifier.split("/"):
        if not segment:
            return None
        if scope is not None:
            package_names.append(f"{scope}/{segment}")
            scope = None
        elif segment.startswith("@"):
            scope = segment
        else:
            package_names.append(segment)
    if scope is not None:
        return None

    return _details_from_names(package_names)


def _parse_name_and_version(part: str) -> dict | None:
    tokens = [t.strip() for t in part.split("+") if t.strip()]
    if not tokens:
        return None
    if len(tokens) == 1:
        return {"name": tokens[0]}

    version_index = next((i for i, t in enumerate(tokens) if _VERSION_RE.match(t)), None)
    if version_index is None:
        if len(tokens) != 2:
            return None
        return {"name": f"{tokens[0]}/{tokens[1]}"}

    name_tokens = tokens[:version_index]
    if len(name_tokens) == 1:
        name = name_tokens[0]
    elif len(name_tokens) == 2:
        name = f"{name_tokens[0]}/{name_tokens[1]}"
    else:
        return None

    parsed: dict = {"name": name, "version": tokens[version_index]}
    sequence_tokens = tokens[version_index + 1:]
    if not sequence_tokens:
        return parsed
    if len(sequence_tokens) > 2 or not sequence_tokens[0].isdigit():
        return None
    parsed["sequence_number"] = int(sequence_tokens[0])
    if len(sequence_tokens) == 2:
        parsed["sequence_name"] = sequence_tokens[1]
    return parsed


def details_from_patch_filename(patch_filename: str) -> PatchedPackageDetails | None:
    """Parse a patch file name; None when it does not follow the naming grammar."""
    if not _PATCH_SUFFIX_RE.search(patch_filename):
        return None

    stem = _PATCH_SUFFIX_RE.sub("", patch_filename)
    parts = [_parse_name_and_version(part) for part in stem.split("++")]
    if not parts or any(p is None for p in parts):
        return None

    # versions of enclosing packages, if present, are ignored
    last = parts[-1]
    if "version" not in last:
        return None

    base = _details_from_names([p["name"] for p in parts])
    return PatchedPackageDetails(
        **vars(base),
        version=last["version"],
        patch_filename=patch_filename,
        is_dev_only=patch_filename.endswith(".dev.patch"),
        sequence_name=last.get("sequence_name"),
        sequence_number=last.get("sequence_number"),
    )


def sanitize_sequence_name(name: str) -> str:
    return _SEQUENCE_NAME_RE.sub("-", name.strip()).strip("-")


def make_patch_filename(
    package: PackageDetails,
    version: str,
    sequence_number: int | None = None,
    sequence_name: str | None = None,
    dev_only: bool = False,
) -> str:
    names = "++".join(name.replace("/", "+") for name in package.package_names)
    number = "" if sequence_number is None else f"+{sequence_number:03d}"
    label = f"+{sequence_name}" if sequence_name else ""
    suffix = ".dev.patch" if dev_only else ".patch"
    return f"{names}+{version}{number}{label}{suffix}"
