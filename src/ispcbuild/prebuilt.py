"""Resolution of prebuilt library/header sets for builds that skip compilation."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import ArtifactNotFoundError, ArtifactVersionMismatchError
from .models import ArtifactMarker, PrebuiltArtifactSet

MARKER_FILENAME = "ispcbuild.json"


@dataclass(frozen=True, slots=True)
class Candidate:
    label: str
    path: Path


@dataclass(frozen=True, slots=True)
class _Rejection:
    candidate: Candidate
    reason: str


def candidate_locations(
    name: str,
    version: str,
    *,
    override: Path | None = None,
    package_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[Candidate, ...]:
    """Ordered search locations: explicit override, version default, package default."""
    environ = os.environ if env is None else env
    candidates: list[Candidate] = []
    if override is not None:
        candidates.append(Candidate(label="override", path=Path(override)))
    cache_home = environ.get("XDG_CACHE_HOME")
    cache_root = Path(cache_home) if cache_home else Path.home() / ".cache"
    candidates.append(
        Candidate(label="version-default", path=cache_root / "ispcbuild" / name / version),
    )
    if package_dir is not None:
        candidates.append(Candidate(label="package-default", path=Path(package_dir) / "prebuilt"))
    return tuple(candidates)


def library_filename(name: str, target_os: str | None = None) -> str:
    if target_os == "windows":
        return f"{name}.lib"
    return f"lib{name}.a"


def read_marker(path: Path) -> ArtifactMarker:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("marker must be a JSON object")
    name = payload.get("name")
    version = payload.get("version")
    targets = payload.get("targets", [])
    if not isinstance(name, str) or not isinstance(version, str):
        raise ValueError("marker requires string `name` and `version`")
    if not isinstance(targets, list) or not all(isinstance(item, str) for item in targets):
        raise ValueError("marker `targets` must be a list of strings")
    return ArtifactMarker(name=name, version=version, targets=tuple(targets))


def resolve_prebuilt(
    name: str,
    *,
    version: str,
    targets: tuple[str, ...] = (),
    override: Path | None = None,
    package_dir: Path | None = None,
    target_os: str | None = None,
    env: Mapping[str, str] | None = None,
) -> PrebuiltArtifactSet:
    """Find the first candidate whose marker matches *name*, *version*, and *targets*.

    Candidates that exist but carry a different identity are skipped; if no
    candidate matches and at least one was skipped for that reason, the
    mismatch is reported instead of a plain not-found.
    """
    candidates = candidate_locations(
        name,
        version,
        override=override,
        package_dir=package_dir,
        env=env,
    )
    library_name = library_filename(name, target_os)
    rejections: list[_Rejection] = []
    for candidate in candidates:
        library = candidate.path / library_name
        header = candidate.path / f"{name}.h"
        marker_path = candidate.path / MARKER_FILENAME
        if not (library.is_file() and header.is_file() and marker_path.is_file()):
            continue
        try:
            marker = read_marker(marker_path)
        except (OSError, ValueError) as exc:
            rejections.append(_Rejection(candidate, f"unreadable marker: {exc}"))
            continue
        reason = _mismatch_reason(marker, name=name, version=version, targets=targets)
        if reason is not None:
            rejections.append(_Rejection(candidate, reason))
            continue
        return PrebuiltArtifactSet(
            library_path=library,
            header_path=header,
            marker=marker,
            location=candidate.path,
        )

    searched = "; ".join(f"{c.label}={c.path}" for c in candidates)
    if rejections:
        raise ArtifactVersionMismatchError(
            "Prebuilt artifacts were found but do not match the required identity.",
            hint="Rebuild the prebuilt set for this version or build from source.",
            context={
                "name": name,
                "required_version": version,
                "rejected": "; ".join(
                    f"{item.candidate.label}={item.candidate.path} ({item.reason})"
                    for item in rejections
                ),
                "searched": searched,
            },
        )
    raise ArtifactNotFoundError(
        "No prebuilt artifact set was found.",
        hint=(
            f"Place {library_name}, {name}.h and {MARKER_FILENAME} in one of the searched "
            "locations, set ISPCBUILD_PREBUILT_DIR, or build from source."
        ),
        context={"name": name, "required_version": version, "searched": searched},
    )


def _mismatch_reason(
    marker: ArtifactMarker,
    *,
    name: str,
    version: str,
    targets: tuple[str, ...],
) -> str | None:
    if marker.name != name:
        return f"name {marker.name!r} != {name!r}"
    if marker.version != version:
        return f"version {marker.version!r} != {version!r}"
    if marker.targets:
        missing = [isa for isa in targets if isa not in marker.targets]
        if missing:
            return f"missing targets {', '.join(missing)}"
    return None
