"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from ispcbuild.bindings import CdefSignatureGenerator
from ispcbuild.compiler import StubCodeGenerator
from ispcbuild.config import BuildOverrides, Config
from ispcbuild.linker import StubToolchain
from ispcbuild.models import BuildConfig
from ispcbuild.observability import StructuredLogger
from ispcbuild.pipeline import BuildPass

KERNEL_SOURCE = """\
#include "common.isph"

export void k(uniform float data[], uniform int count) {
    foreach (i = 0 ... count) {
        data[i] = data[i] * SCALE;
    }
}
"""

OTHER_SOURCE = """\
export void other(uniform float data[], uniform int count) {
    foreach (i = 0 ... count) {
        data[i] = data[i] + 1.0f;
    }
}
"""


@pytest.fixture
def kernel_root(tmp_path: Path) -> Path:
    """A project tree with two kernel sources and one shared include."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "include").mkdir()
    (root / "src" / "k.ispc").write_text(KERNEL_SOURCE, encoding="utf-8")
    (root / "src" / "other.ispc").write_text(OTHER_SOURCE, encoding="utf-8")
    (root / "include" / "common.isph").write_text("#define SCALE_DEFAULT 1\n", encoding="utf-8")
    return root


@pytest.fixture
def stub_generator() -> StubCodeGenerator:
    return StubCodeGenerator()


@pytest.fixture
def stub_toolchain() -> StubToolchain:
    return StubToolchain()


@pytest.fixture
def make_config(kernel_root: Path) -> Callable[..., BuildConfig]:
    def _make(
        *sources: str,
        targets: tuple[str, ...] = ("sse4-i32x4", "avx2-i32x8"),
        defines: dict[str, str] | None = None,
        dispatch: str = "batched",
    ) -> BuildConfig:
        config = Config("kernels", root=kernel_root).source(*(sources or ("src/k.ispc",)))
        config.targets(*targets).include("include").dispatch(dispatch)  # type: ignore[arg-type]
        for name, value in (defines or {}).items():
            config.define(name, value)
        return config.finalize()

    return _make


@pytest.fixture
def make_pass(
    stub_generator: StubCodeGenerator,
    stub_toolchain: StubToolchain,
) -> Callable[..., BuildPass]:
    def _make(config: BuildConfig, **kwargs: object) -> BuildPass:
        kwargs.setdefault("code_generator", stub_generator)
        kwargs.setdefault("toolchain", stub_toolchain)
        kwargs.setdefault("signature_generator", CdefSignatureGenerator())
        kwargs.setdefault("overrides", BuildOverrides())
        kwargs.setdefault("logger", StructuredLogger())
        return BuildPass(config=config, **kwargs)  # type: ignore[arg-type]

    return _make
