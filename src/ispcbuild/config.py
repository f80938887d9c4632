"""Build intent accumulation and finalization into an immutable :class:`BuildConfig`."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Self

from .errors import BuildIOError, ConfigError, IncompleteConfigError, UnsupportedTargetError
from .models import (
    DISPATCH_MODES,
    MATH_LIBS,
    OPTIMIZATION_LEVELS,
    OPTIMIZATION_OPTIONS,
    SUPPORTED_TARGETS,
    TARGET_OS_NAMES,
    TASKING_MODES,
    Addressing,
    BuildConfig,
    Define,
    DispatchMode,
    MathLib,
    OptimizationLevel,
    TaskingMode,
)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_BATCH_LIMIT = 8


@dataclass(slots=True)
class Config:
    """Accumulates build intent for one library.

    Every mutator validates eagerly and returns ``self`` so calls chain::

        config = (
            Config("kernels")
            .source("src/kernels.ispc")
            .targets("sse4-i32x4", "avx2-i32x8")
            .define("SCALE", "2")
            .finalize()
        )
    """

    name: str
    root: Path = field(default_factory=Path.cwd)
    _sources: list[Path] = field(init=False, default_factory=list, repr=False)
    _include_paths: list[Path] = field(init=False, default_factory=list, repr=False)
    _defines: dict[str, Define] = field(init=False, default_factory=dict, repr=False)
    _optimization: OptimizationLevel = field(init=False, default="O2", repr=False)
    _targets: list[str] = field(init=False, default_factory=list, repr=False)
    _debug: bool = field(init=False, default=False, repr=False)
    _math_lib: MathLib = field(init=False, default="default", repr=False)
    _output_dir: Path | None = field(init=False, default=None, repr=False)
    _extra_flags: list[str] = field(init=False, default_factory=list, repr=False)
    _link_flags: list[str] = field(init=False, default_factory=list, repr=False)
    _addressing: Addressing = field(init=False, default=64, repr=False)
    _cpu: str | None = field(init=False, default=None, repr=False)
    _target_os: str | None = field(init=False, default=None, repr=False)
    _options: list[str] = field(init=False, default_factory=list, repr=False)
    _werror: bool = field(init=False, default=False, repr=False)
    _wno_perf: bool = field(init=False, default=False, repr=False)
    _instrument: bool = field(init=False, default=False, repr=False)
    _dispatch: DispatchMode = field(init=False, default="batched", repr=False)
    _batch_limit: int = field(init=False, default=DEFAULT_BATCH_LIMIT, repr=False)
    _tasking: TaskingMode = field(init=False, default="serial", repr=False)
    _jobs: int | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if not IDENTIFIER_PATTERN.fullmatch(self.name):
            raise ConfigError(
                "Library name must be a C identifier.",
                hint="Use letters, digits, and underscores only.",
                context={"name": self.name},
            )
        self.root = Path(self.root).resolve()

    def source(self, *paths: str | Path) -> Self:
        if not paths:
            raise ConfigError("source() requires at least one path.")
        for raw in paths:
            path = self._resolve(raw)
            if not path.is_file():
                raise ConfigError(
                    "Kernel source file does not exist.",
                    context={"path": str(path)},
                )
            if path in self._sources:
                raise ConfigError(
                    "Kernel source file was added twice.",
                    hint="Each source may be listed once per library.",
                    context={"path": str(path)},
                )
            self._sources.append(path)
        return self

    def include(self, *paths: str | Path) -> Self:
        if not paths:
            raise ConfigError("include() requires at least one path.")
        for raw in paths:
            path = self._resolve(raw)
            if path not in self._include_paths:
                self._include_paths.append(path)
        return self

    def define(
        self,
        name: str,
        value: str | int | None = None,
        *,
        sources: tuple[str | Path, ...] = (),
    ) -> Self:
        """Set a preprocessor define, replacing any previous value for *name*.

        A define scoped with ``sources=`` only reaches units built from those
        files, so changing it does not invalidate unrelated units.
        """
        if not IDENTIFIER_PATTERN.fullmatch(name):
            raise ConfigError("Define names must be identifiers.", context={"name": name})
        scope = tuple(self._source_key(self._resolve(source)) for source in sources)
        text = None if value is None else str(value)
        self._defines.pop(name, None)
        self._defines[name] = Define(name=name, value=text, sources=scope)
        return self

    def optimization(self, level: OptimizationLevel) -> Self:
        if level not in OPTIMIZATION_LEVELS:
            raise ConfigError(
                "Unknown optimization level.",
                hint=f"Choose one of: {', '.join(OPTIMIZATION_LEVELS)}.",
                context={"level": str(level)},
            )
        self._optimization = level
        return self

    def targets(self, *isas: str) -> Self:
        if not isas:
            raise ConfigError("targets() requires at least one ISA.")
        unsupported = [isa for isa in isas if isa not in SUPPORTED_TARGETS]
        if unsupported:
            raise UnsupportedTargetError(
                "Requested ISA is not supported by the kernel compiler.",
                hint="See ispcbuild.models.SUPPORTED_TARGETS for accepted targets.",
                context={"targets": ", ".join(unsupported)},
            )
        for isa in isas:
            if isa not in self._targets:
                self._targets.append(isa)
        return self

    def debug(self, enabled: bool = True) -> Self:
        self._debug = enabled
        return self

    def math_lib(self, lib: MathLib) -> Self:
        if lib not in MATH_LIBS:
            raise ConfigError(
                "Unknown math library.",
                hint=f"Choose one of: {', '.join(MATH_LIBS)}.",
                context={"math_lib": str(lib)},
            )
        self._math_lib = lib
        return self

    def output_dir(self, path: str | Path) -> Self:
        self._output_dir = self._create_dir(self._resolve(path))
        return self

    def compiler_flags(self, *flags: str) -> Self:
        self._extra_flags.extend(flags)
        return self

    def link_flags(self, *flags: str) -> Self:
        self._link_flags.extend(flags)
        return self

    def addressing(self, bits: Addressing) -> Self:
        if bits not in (32, 64):
            raise ConfigError("Addressing must be 32 or 64.", context={"bits": str(bits)})
        self._addressing = bits
        return self

    def cpu(self, name: str) -> Self:
        if not name:
            raise ConfigError("cpu() requires a non-empty CPU name.")
        self._cpu = name
        return self

    def target_os(self, name: str) -> Self:
        if name not in TARGET_OS_NAMES:
            raise ConfigError(
                "Unknown target OS.",
                hint=f"Choose one of: {', '.join(TARGET_OS_NAMES)}.",
                context={"target_os": name},
            )
        self._target_os = name
        return self

    def option(self, *opts: str) -> Self:
        for opt in opts:
            if opt not in OPTIMIZATION_OPTIONS:
                raise ConfigError(
                    "Unknown optimization option.",
                    hint=f"Choose from: {', '.join(OPTIMIZATION_OPTIONS)}.",
                    context={"option": opt},
                )
            if opt not in self._options:
                self._options.append(opt)
        return self

    def werror(self, enabled: bool = True) -> Self:
        self._werror = enabled
        return self

    def wno_perf(self, enabled: bool = True) -> Self:
        self._wno_perf = enabled
        return self

    def instrument(self, enabled: bool = True) -> Self:
        self._instrument = enabled
        return self

    def dispatch(self, mode: DispatchMode, *, batch_limit: int | None = None) -> Self:
        """Choose between one multi-target invocation per source and one per ISA."""
        if mode not in DISPATCH_MODES:
            raise ConfigError(
                "Unknown dispatch mode.",
                hint=f"Choose one of: {', '.join(DISPATCH_MODES)}.",
                context={"dispatch": str(mode)},
            )
        if batch_limit is not None:
            if batch_limit < 1:
                raise ConfigError("batch_limit must be at least 1.")
            self._batch_limit = batch_limit
        self._dispatch = mode
        return self

    def tasking(self, mode: TaskingMode) -> Self:
        """Select the task runtime linked into the library for ``launch``/``sync``."""
        if mode not in TASKING_MODES:
            raise ConfigError(
                "Unknown tasking mode.",
                hint=f"Choose one of: {', '.join(TASKING_MODES)}.",
                context={"tasking": str(mode)},
            )
        self._tasking = mode
        return self

    def jobs(self, count: int) -> Self:
        if count < 1:
            raise ConfigError("jobs() requires a positive worker count.")
        self._jobs = count
        return self

    def finalize(self) -> BuildConfig:
        if not self._sources:
            raise IncompleteConfigError(
                "No kernel sources were configured.",
                hint="Call source() at least once before finalize().",
                context={"name": self.name},
            )
        if not self._targets:
            raise IncompleteConfigError(
                "No target ISAs were configured.",
                hint="Call targets() at least once before finalize().",
                context={"name": self.name},
            )
        output_dir = self._output_dir
        if output_dir is None:
            output_dir = self._create_dir(self.root / "build" / "ispc")
        return BuildConfig(
            name=self.name,
            source_root=self.root,
            sources=tuple(self._sources),
            include_paths=tuple(self._include_paths),
            defines=tuple(self._defines.values()),
            optimization=self._optimization,
            targets=tuple(self._targets),
            debug=self._debug,
            math_lib=self._math_lib,
            output_dir=output_dir,
            extra_flags=tuple(self._extra_flags),
            link_flags=tuple(self._link_flags),
            addressing=self._addressing,
            cpu=self._cpu,
            target_os=self._target_os,
            options=tuple(self._options),
            werror=self._werror,
            wno_perf=self._wno_perf,
            instrument=self._instrument,
            dispatch=self._dispatch,
            batch_limit=self._batch_limit,
            tasking=self._tasking,
            jobs=self._jobs,
        )

    def _resolve(self, raw: str | Path) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = self.root / path
        return Path(os.path.normpath(path))

    def _source_key(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return path.as_posix()

    def _create_dir(self, path: Path) -> Path:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildIOError(
                "Could not create the output directory.",
                hint="Check permissions and that no file exists at this path.",
                context={"path": str(path), "error": str(exc)},
            ) from exc
        return path


_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class BuildOverrides:
    """Switches the surrounding build environment can flip without code changes."""

    compiler: str | None = None
    force_prebuilt: bool = False
    prebuilt_dir: Path | None = None
    jobs: int | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BuildOverrides:
        environ = os.environ if env is None else env
        jobs_raw = environ.get("ISPCBUILD_JOBS", "").strip()
        jobs: int | None = None
        if jobs_raw:
            try:
                jobs = int(jobs_raw)
            except ValueError as exc:
                raise ConfigError(
                    "ISPCBUILD_JOBS must be a positive integer.",
                    context={"ISPCBUILD_JOBS": jobs_raw},
                ) from exc
            if jobs < 1:
                raise ConfigError(
                    "ISPCBUILD_JOBS must be a positive integer.",
                    context={"ISPCBUILD_JOBS": jobs_raw},
                )
        prebuilt_dir = environ.get("ISPCBUILD_PREBUILT_DIR") or None
        return cls(
            compiler=environ.get("ISPCBUILD_COMPILER") or None,
            force_prebuilt=environ.get("ISPCBUILD_PREBUILT", "").strip().lower() in _TRUTHY,
            prebuilt_dir=Path(prebuilt_dir) if prebuilt_dir else None,
            jobs=jobs,
        )
