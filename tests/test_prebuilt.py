"""Tests for prebuilt artifact resolution."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ispcbuild.errors import ArtifactNotFoundError, ArtifactVersionMismatchError, ErrorCode
from ispcbuild.prebuilt import MARKER_FILENAME, candidate_locations, resolve_prebuilt


def _stage_prebuilt(
    directory: Path,
    *,
    name: str = "kernels",
    version: str = "0.1.0",
    targets: tuple[str, ...] = ("sse4-i32x4", "avx2-i32x8"),
) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"lib{name}.a").write_bytes(b"!<arch>\nprebuilt\n")
    (directory / f"{name}.h").write_text(
        "extern void k(float * data, int32_t count);\n", encoding="utf-8"
    )
    (directory / MARKER_FILENAME).write_text(
        json.dumps({"name": name, "version": version, "targets": list(targets)}),
        encoding="utf-8",
    )
    return directory


def test_candidate_order(tmp_path: Path) -> None:
    candidates = candidate_locations(
        "kernels",
        "0.1.0",
        override=tmp_path / "override",
        package_dir=tmp_path / "pkg",
        env={"XDG_CACHE_HOME": str(tmp_path / "cache")},
    )

    assert [(c.label, c.path) for c in candidates] == [
        ("override", tmp_path / "override"),
        ("version-default", tmp_path / "cache" / "ispcbuild" / "kernels" / "0.1.0"),
        ("package-default", tmp_path / "pkg" / "prebuilt"),
    ]


def test_override_wins_over_later_candidates(tmp_path: Path) -> None:
    env = {"XDG_CACHE_HOME": str(tmp_path / "cache")}
    override = _stage_prebuilt(tmp_path / "override")
    _stage_prebuilt(tmp_path / "pkg" / "prebuilt")

    found = resolve_prebuilt(
        "kernels",
        version="0.1.0",
        targets=("sse4-i32x4",),
        override=override,
        package_dir=tmp_path / "pkg",
        env=env,
    )

    assert found.location == override
    assert found.library_path == override / "libkernels.a"
    assert found.header_path == override / "kernels.h"
    assert found.marker.targets == ("sse4-i32x4", "avx2-i32x8")


def test_version_default_is_used_without_override(tmp_path: Path) -> None:
    env = {"XDG_CACHE_HOME": str(tmp_path / "cache")}
    expected = _stage_prebuilt(tmp_path / "cache" / "ispcbuild" / "kernels" / "0.1.0")

    found = resolve_prebuilt("kernels", version="0.1.0", env=env)

    assert found.location == expected


def test_not_found_names_every_searched_location(tmp_path: Path) -> None:
    env = {"XDG_CACHE_HOME": str(tmp_path / "cache")}

    with pytest.raises(ArtifactNotFoundError) as exc_info:
        resolve_prebuilt(
            "kernels",
            version="0.1.0",
            override=tmp_path / "override",
            package_dir=tmp_path / "pkg",
            env=env,
        )

    error = exc_info.value
    assert error.code == ErrorCode.ARTIFACT_NOT_FOUND
    searched = error.context["searched"]
    assert str(tmp_path / "override") in searched
    assert str(tmp_path / "cache" / "ispcbuild" / "kernels" / "0.1.0") in searched
    assert str(tmp_path / "pkg" / "prebuilt") in searched


def test_incomplete_set_is_not_a_candidate(tmp_path: Path) -> None:
    override = _stage_prebuilt(tmp_path / "override")
    (override / "kernels.h").unlink()

    with pytest.raises(ArtifactNotFoundError):
        resolve_prebuilt(
            "kernels",
            version="0.1.0",
            override=override,
            env={"XDG_CACHE_HOME": str(tmp_path / "cache")},
        )


def test_version_mismatch_is_reported(tmp_path: Path) -> None:
    override = _stage_prebuilt(tmp_path / "override", version="0.0.9")

    with pytest.raises(ArtifactVersionMismatchError) as exc_info:
        resolve_prebuilt(
            "kernels",
            version="0.1.0",
            override=override,
            env={"XDG_CACHE_HOME": str(tmp_path / "cache")},
        )

    assert exc_info.value.code == ErrorCode.ARTIFACT_VERSION_MISMATCH
    assert "'0.0.9' != '0.1.0'" in exc_info.value.context["rejected"]


def test_missing_target_is_a_mismatch(tmp_path: Path) -> None:
    override = _stage_prebuilt(tmp_path / "override", targets=("sse4-i32x4",))

    with pytest.raises(ArtifactVersionMismatchError, match="do not match"):
        resolve_prebuilt(
            "kernels",
            version="0.1.0",
            targets=("sse4-i32x4", "avx512skx-x16"),
            override=override,
            env={"XDG_CACHE_HOME": str(tmp_path / "cache")},
        )


def test_mismatched_candidate_is_skipped_for_a_later_match(tmp_path: Path) -> None:
    override = _stage_prebuilt(tmp_path / "override", version="0.0.9")
    package = _stage_prebuilt(tmp_path / "pkg" / "prebuilt")

    found = resolve_prebuilt(
        "kernels",
        version="0.1.0",
        override=override,
        package_dir=tmp_path / "pkg",
        env={"XDG_CACHE_HOME": str(tmp_path / "cache")},
    )

    assert found.location == package


def test_unreadable_marker_is_a_mismatch(tmp_path: Path) -> None:
    override = _stage_prebuilt(tmp_path / "override")
    (override / MARKER_FILENAME).write_text("[]", encoding="utf-8")

    with pytest.raises(ArtifactVersionMismatchError) as exc_info:
        resolve_prebuilt(
            "kernels",
            version="0.1.0",
            override=override,
            env={"XDG_CACHE_HOME": str(tmp_path / "cache")},
        )

    assert "unreadable marker" in exc_info.value.context["rejected"]
