"""Kernel compiler invocation: flag derivation, process execution, output checks."""

from __future__ import annotations

import hashlib
import os
import re
import subprocess
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from itertools import islice
from typing import Protocol

from .errors import CompileError, ConfigError, ToolchainContractError
from .headers import exported_symbols
from .matrix import isa_batches
from .models import BuildConfig, CompiledArtifact, TargetUnit, isa_tag
from .observability import StructuredLogger

VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)\.(\d+)")


@dataclass(frozen=True, slots=True)
class ProcessResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


class CodeGenerator(Protocol):
    """Capability that turns one kernel source into an object and a header."""

    executable: str

    def identity(self) -> str:
        """Return a stable compiler identity folded into every fingerprint."""

    def run(self, unit: TargetUnit, command: tuple[str, ...]) -> ProcessResult:
        """Execute *command* for *unit* and report the captured process result."""


def compile_flags(unit: TargetUnit, config: BuildConfig) -> tuple[str, ...]:
    """Flags affecting the output of *unit*, excluding output and source paths."""
    flags: list[str] = [f"--target={','.join(unit.isas)}"]
    if config.dispatch == "per_isa" or len(isa_batches(config)) > 1:
        suffix = "_".join(isa_tag(isa) for isa in unit.isas)
        flags.append(f"-DISPCBUILD_ISA_SUFFIX=_{suffix}")
    flags.extend(define.flag() for define in config.defines_for(unit.source_key))
    flags.extend(f"-I{path}" for path in config.include_paths)
    flags.append(f"-{config.optimization}")
    if config.debug:
        flags.append("-g")
    flags.append(f"--math-lib={config.math_lib}")
    flags.append(f"--addressing={config.addressing}")
    if config.cpu:
        flags.append(f"--cpu={config.cpu}")
    if config.target_os:
        flags.append(f"--target-os={config.target_os}")
    if config.target_os != "windows":
        flags.append("--pic")
    flags.extend(f"--opt={opt}" for opt in config.options)
    if config.werror:
        flags.append("--werror")
    if config.wno_perf:
        flags.append("--wno-perf")
    if config.instrument:
        flags.append("--instrument")
    flags.extend(config.extra_flags)
    return tuple(flags)


def compile_command(unit: TargetUnit, config: BuildConfig, executable: str) -> tuple[str, ...]:
    return (
        executable,
        *compile_flags(unit, config),
        "-o",
        str(unit.object_path),
        "-h",
        str(unit.header_path),
        "-M",
        "-MF",
        str(unit.deps_path),
        str(unit.source),
    )


def parse_version(text: str) -> tuple[int, int, int] | None:
    match = VERSION_PATTERN.search(text)
    if match is None:
        return None
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


@dataclass(slots=True)
class ProcessCodeGenerator:
    """Runs the ISPC compiler as a subprocess."""

    executable: str = "ispc"
    minimum_version: tuple[int, int, int] | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    _identity: str | None = field(init=False, default=None, repr=False)

    def identity(self) -> str:
        if self._identity is not None:
            return self._identity
        try:
            result = subprocess.run(
                [self.executable, "--version"],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ConfigError(
                "Kernel compiler executable was not found.",
                hint="Install ISPC or point ISPCBUILD_COMPILER at the compiler binary.",
                context={"compiler": self.executable},
            ) from exc
        banner = (result.stdout or result.stderr).strip()
        version = parse_version(banner)
        if self.minimum_version is not None and (
            version is None or version < self.minimum_version
        ):
            raise ConfigError(
                "Kernel compiler is older than the required minimum version.",
                hint="Upgrade ISPC or lower minimum_version.",
                context={
                    "compiler": self.executable,
                    "found": banner.splitlines()[0] if banner else "",
                    "required": ".".join(str(part) for part in self.minimum_version),
                },
            )
        if version is not None:
            self._identity = "ispc " + ".".join(str(part) for part in version)
        else:
            self._identity = banner.splitlines()[0] if banner else self.executable
        return self._identity

    def run(self, unit: TargetUnit, command: tuple[str, ...]) -> ProcessResult:
        env = dict(os.environ)
        env.update(self.env)
        try:
            result = subprocess.run(
                list(command),
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            return ProcessResult(returncode=127, stderr=f"{command[0]}: command not found")
        return ProcessResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )


@dataclass(slots=True)
class StubCodeGenerator:
    """Deterministic in-process code generator for tests and dry runs.

    Writes fake objects, headers, and dependency files derived from the
    command line. ``failures`` maps a unit identity or source key to a canned
    result; ``skip_outputs`` lists identities whose outputs are never written
    and ``skip_auxiliary`` those whose per-target objects are never written;
    ``headers`` overrides the generated header text per source key.
    """

    executable: str = "ispc-stub"
    version: str = "0.0.0"
    failures: dict[str, ProcessResult] = field(default_factory=dict)
    skip_outputs: set[str] = field(default_factory=set)
    skip_auxiliary: set[str] = field(default_factory=set)
    headers: dict[str, str] = field(default_factory=dict)
    invocations: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def identity(self) -> str:
        return f"ispc-stub {self.version}"

    def run(self, unit: TargetUnit, command: tuple[str, ...]) -> ProcessResult:
        with self._lock:
            self.invocations.append(unit.identity)
        canned = self.failures.get(unit.identity) or self.failures.get(unit.source_key)
        if canned is not None:
            return canned
        if unit.identity in self.skip_outputs:
            return ProcessResult(returncode=0)

        flags = " ".join(command[1:-8])
        source_digest = hashlib.sha256(unit.source.read_bytes()).hexdigest()
        unit.object_path.write_text(
            f"stub-object {unit.identity} {source_digest}\n{flags}\n", encoding="utf-8"
        )
        if unit.identity not in self.skip_auxiliary:
            for aux in unit.auxiliary_objects():
                aux.write_text(f"stub-object {aux.stem}\n", encoding="utf-8")
        unit.header_path.write_text(self._header(unit, command), encoding="utf-8")
        unit.deps_path.write_text(f"{unit.object_path}: {unit.source}\n", encoding="utf-8")
        return ProcessResult(returncode=0, stdout="", stderr="")

    def _header(self, unit: TargetUnit, command: tuple[str, ...]) -> str:
        override = self.headers.get(unit.source_key)
        if override is not None:
            return override
        suffix = ""
        for arg in command:
            if arg.startswith("-DISPCBUILD_ISA_SUFFIX="):
                suffix = arg.split("=", 1)[1]
        name = re.sub(r"\W", "_", unit.source.stem) + suffix
        return (
            "#pragma once\n"
            "#include <stdint.h>\n"
            "#ifdef __cplusplus\n"
            "namespace ispc { /* namespace */\n"
            'extern "C" {\n'
            "#endif\n"
            f"    extern void {name}(float * data, int32_t count);\n"
            "#ifdef __cplusplus\n"
            "} /* end extern C */\n"
            "} /* namespace */\n"
            "#endif\n"
        )


@dataclass(slots=True)
class CompilerInvoker:
    config: BuildConfig
    generator: CodeGenerator
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    jobs: int | None = None

    def command(self, unit: TargetUnit) -> tuple[str, ...]:
        return compile_command(unit, self.config, self.generator.executable)

    def invoke(self, unit: TargetUnit) -> CompiledArtifact:
        for directory in {
            unit.object_path.parent,
            unit.header_path.parent,
            unit.deps_path.parent,
        }:
            directory.mkdir(parents=True, exist_ok=True)
        command = self.command(unit)
        result = self.generator.run(unit, command)
        if result.returncode != 0:
            raise CompileError(
                "Kernel compilation failed.",
                hint="Run the command below by hand to reproduce the failure.",
                context={
                    "unit": unit.identity,
                    "command": " ".join(command),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                },
            )
        for declared in (unit.object_path, unit.header_path, *unit.auxiliary_objects()):
            if not declared.is_file() or declared.stat().st_size == 0:
                raise ToolchainContractError(
                    "Kernel compiler reported success but a declared output is missing or empty.",
                    hint="Check the compiler version and that it honours -o, -h and --target.",
                    context={
                        "unit": unit.identity,
                        "command": " ".join(command),
                        "missing": str(declared),
                        "stdout": result.stdout[:2000] if result.stdout else "",
                    },
                )
        return self._artifact(unit, cached=False)

    def cached_artifact(self, unit: TargetUnit) -> CompiledArtifact:
        return self._artifact(unit, cached=True)

    def compile_all(self, units: Iterable[TargetUnit]) -> dict[str, CompiledArtifact]:
        """Compile *units* on a bounded worker pool.

        At most ``jobs`` invocations are in flight. The first failure stops
        further submissions; units already running are allowed to finish
        before the error propagates.
        """
        queue = list(units)
        if not queue:
            return {}
        workers = max(1, min(self.jobs or os.cpu_count() or 1, len(queue)))
        remaining = iter(queue)
        results: dict[str, CompiledArtifact] = {}
        failure: BaseException | None = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ispcbuild") as pool:
            pending: dict[Future[CompiledArtifact], TargetUnit] = {
                pool.submit(self.invoke, unit): unit for unit in islice(remaining, workers)
            }
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    unit = pending.pop(future)
                    error = future.exception()
                    if error is not None:
                        self.logger.log(
                            operation="compile_failed",
                            stage="compile",
                            unit=unit.identity,
                            level="error",
                            message="Kernel compilation failed; no further units are started.",
                        )
                        if failure is None:
                            failure = error
                        continue
                    results[unit.identity] = future.result()
                    self.logger.log(
                        operation="compile_unit",
                        stage="compile",
                        unit=unit.identity,
                        message="Compiled unit.",
                        extra={"isas": list(unit.isas)},
                    )
                if failure is None:
                    for unit in islice(remaining, len(done)):
                        pending[pool.submit(self.invoke, unit)] = unit
        if failure is not None:
            raise failure
        return results

    def _artifact(self, unit: TargetUnit, *, cached: bool) -> CompiledArtifact:
        return CompiledArtifact(
            unit=unit,
            object_path=unit.object_path,
            header_path=unit.header_path,
            symbols=exported_symbols(unit.header_path),
            auxiliary_objects=unit.auxiliary_objects(),
            cached=cached,
        )
