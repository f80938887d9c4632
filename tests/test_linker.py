"""Tests for object aggregation and the static library driver."""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from pathlib import Path

import pytest

from ispcbuild.compiler import CompilerInvoker, ProcessResult, StubCodeGenerator
from ispcbuild.errors import ErrorCode, LinkError, ToolchainContractError
from ispcbuild.linker import (
    GLUE_SOURCES,
    LinkerDriver,
    ProcessToolchain,
    StubToolchain,
    ensure_unique_symbols,
    glue_source,
    link_inputs,
)
from ispcbuild.matrix import expand_units
from ispcbuild.models import BuildConfig, CompiledArtifact, TargetUnit


class _FakeRunResult:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _artifact(identity_source: str, symbols: tuple[str, ...], tmp_path: Path) -> CompiledArtifact:
    unit = TargetUnit(
        source=tmp_path / identity_source,
        source_key=identity_source,
        isas=("host",),
        object_path=tmp_path / f"{identity_source}.o",
        header_path=tmp_path / f"{identity_source}.h",
        deps_path=tmp_path / f"{identity_source}.d",
    )
    return CompiledArtifact(
        unit=unit,
        object_path=unit.object_path,
        header_path=unit.header_path,
        symbols=symbols,
    )


def test_link_inputs_keep_unit_order_with_per_isa_objects_after_dispatcher(
    make_config: Callable[..., BuildConfig],
) -> None:
    config = make_config("src/k.ispc", "src/other.ispc")
    units = expand_units(config)
    invoker = CompilerInvoker(config=config, generator=StubCodeGenerator())
    artifacts = [invoker.invoke(unit) for unit in reversed(units)]
    artifacts.reverse()

    inputs = link_inputs(artifacts)

    expected: list[Path] = []
    for unit in units:
        expected.extend((unit.object_path, *unit.auxiliary_objects()))
    assert inputs == tuple(expected)


def test_duplicate_exported_symbol_is_link_error(tmp_path: Path) -> None:
    artifacts = [
        _artifact("a.ispc", ("k",), tmp_path),
        _artifact("b.ispc", ("k", "other"), tmp_path),
    ]

    with pytest.raises(LinkError) as exc_info:
        ensure_unique_symbols(artifacts)

    assert exc_info.value.code == ErrorCode.LINK
    assert exc_info.value.context["symbol"] == "k"
    assert exc_info.value.context["second_unit"] == "b.ispc@host"


def test_distinct_symbols_pass(tmp_path: Path) -> None:
    ensure_unique_symbols(
        [_artifact("a.ispc", ("k_sse4",), tmp_path), _artifact("b.ispc", ("k_avx2",), tmp_path)]
    )


def test_driver_archives_inputs_then_glue(
    make_config: Callable[..., BuildConfig],
    stub_toolchain: StubToolchain,
) -> None:
    config = make_config()
    objects = []
    for name in ("first.o", "second.o"):
        path = config.output_dir / name
        path.write_text(f"object {name}\n", encoding="utf-8")
        objects.append(path)
    driver = LinkerDriver(config=config, toolchain=stub_toolchain)

    library = driver.link(tuple(objects))

    assert library == config.output_dir / "lib" / "libkernels.a"
    content = library.read_text(encoding="utf-8")
    assert content.index("--- first.o ---") < content.index("--- second.o ---")
    assert content.index("--- second.o ---") < content.index("--- ispcbuild_tasks.o ---")
    assert driver.glue_source_path.read_text(encoding="utf-8") == glue_source("serial")
    assert stub_toolchain.invocations == ["cc ispcbuild_tasks.c", "ar libkernels.a"]


def test_archiver_failure_is_link_error_with_stderr(
    make_config: Callable[..., BuildConfig],
) -> None:
    config = make_config()
    toolchain = StubToolchain(
        fail_archive=ProcessResult(returncode=1, stderr="ar: invalid option -- 'Z'")
    )

    with pytest.raises(LinkError) as exc_info:
        LinkerDriver(config=config, toolchain=toolchain).link(())

    assert "invalid option" in exc_info.value.context["stderr"]
    assert exc_info.value.context["returncode"] == "1"


def test_archiver_that_writes_nothing_breaks_contract(
    make_config: Callable[..., BuildConfig],
) -> None:
    class _SilentToolchain(StubToolchain):
        def archive(
            self,
            inputs: tuple[Path, ...],
            output: Path,
            extra_flags: tuple[str, ...],
        ) -> ProcessResult:
            return ProcessResult(returncode=0)

    with pytest.raises(ToolchainContractError):
        LinkerDriver(config=make_config(), toolchain=_SilentToolchain()).link(())


def test_glue_declares_task_entry_points() -> None:
    for source in GLUE_SOURCES.values():
        for symbol in ("ISPCAlloc", "ISPCLaunch", "ISPCSync"):
            assert f"{symbol}(void" in source
    assert "pthread_create" in glue_source("threads")
    assert "pthread" not in glue_source("serial")


def test_process_toolchain_commands(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    commands: list[list[str]] = []

    def fake_run(command: list[str], **_: object) -> _FakeRunResult:
        commands.append(command)
        return _FakeRunResult()

    monkeypatch.setattr("ispcbuild.linker.subprocess.run", fake_run)
    monkeypatch.setattr("ispcbuild.linker.sys.platform", "linux")
    toolchain = ProcessToolchain(cc="clang", ar="llvm-ar")
    obj = tmp_path / "k.o"

    toolchain.compile_glue(tmp_path / "glue.c", tmp_path / "glue.o")
    toolchain.archive((obj,), tmp_path / "libk.a", ("--thin",))

    assert commands == [
        ["clang", "-c", "-O2", "-fPIC", str(tmp_path / "glue.c"), "-o", str(tmp_path / "glue.o")],
        ["llvm-ar", "rcsD", "--thin", str(tmp_path / "libk.a"), str(obj)],
    ]


def test_process_toolchain_expands_prebuilt_archives(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    commands: list[list[str]] = []

    def fake_run(command: list[str], **_: object) -> _FakeRunResult:
        commands.append(command)
        if command[1] == "t":
            return _FakeRunResult(stdout="k.o\nk_avx2.o\n")
        return _FakeRunResult()

    monkeypatch.setattr("ispcbuild.linker.subprocess.run", fake_run)
    monkeypatch.setattr("ispcbuild.linker.sys.platform", "linux")
    prebuilt = tmp_path / "libprebuilt.a"
    glue = tmp_path / "glue.o"

    ProcessToolchain().archive((prebuilt, glue), tmp_path / "out" / "libk.a", ())

    members = tmp_path / "out" / ".libk.a.members" / "0-libprebuilt"
    assert commands[0] == ["ar", "t", str(prebuilt)]
    assert commands[1] == ["ar", "x", str(prebuilt.resolve())]
    assert commands[2] == [
        "ar",
        "rcsD",
        str(tmp_path / "out" / "libk.a"),
        str(members / "k.o"),
        str(members / "k_avx2.o"),
        str(glue),
    ]


def test_threaded_tasking_writes_threaded_glue(
    make_config: Callable[..., BuildConfig],
    stub_toolchain: StubToolchain,
) -> None:
    config = dataclasses.replace(make_config(), tasking="threads")
    driver = LinkerDriver(config=config, toolchain=stub_toolchain)

    driver.link(())

    assert driver.glue_source_path.read_text(encoding="utf-8") == glue_source("threads")


def test_windows_glue_object_matches_kernel_object_suffix(
    make_config: Callable[..., BuildConfig],
    stub_toolchain: StubToolchain,
) -> None:
    config = dataclasses.replace(make_config(), target_os="windows")
    driver = LinkerDriver(config=config, toolchain=stub_toolchain)

    library = driver.link(())

    assert driver.glue_object_path.name == "ispcbuild_tasks.obj"
    assert library.name == "kernels.lib"
    assert "--- ispcbuild_tasks.obj ---" in library.read_text(encoding="utf-8")


def test_failed_archive_expansion_removes_scratch_members(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    def fake_run(command: list[str], **_: object) -> _FakeRunResult:
        if command[1] == "t":
            return _FakeRunResult(stdout="k.o\n")
        if command[1] == "x":
            return _FakeRunResult(returncode=1, stderr="ar: bad archive")
        return _FakeRunResult()

    monkeypatch.setattr("ispcbuild.linker.subprocess.run", fake_run)
    output = tmp_path / "out" / "libk.a"
    output.parent.mkdir()

    result = ProcessToolchain().archive((tmp_path / "libprebuilt.a",), output, ())

    assert result.returncode == 1
    assert not (tmp_path / "out" / ".libk.a.members").exists()
