"""Core typed dataclasses for build configuration, units, and artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

OptimizationLevel = Literal["O0", "O1", "O2", "O3"]
MathLib = Literal["default", "fast", "svml", "system"]
Addressing = Literal[32, 64]
DispatchMode = Literal["batched", "per_isa"]
TaskingMode = Literal["serial", "threads"]
BuildMode = Literal["source", "prebuilt"]

OPTIMIZATION_LEVELS: tuple[OptimizationLevel, ...] = ("O0", "O1", "O2", "O3")
MATH_LIBS: tuple[MathLib, ...] = ("default", "fast", "svml", "system")
DISPATCH_MODES: tuple[DispatchMode, ...] = ("batched", "per_isa")
TASKING_MODES: tuple[TaskingMode, ...] = ("serial", "threads")

OPTIMIZATION_OPTIONS = (
    "disable-assertions",
    "disable-fma",
    "disable-loop-unroll",
    "fast-masked-vload",
    "fast-math",
    "force-aligned-memory",
)

TARGET_OS_NAMES = ("linux", "macos", "windows", "freebsd", "android", "ios", "web")

# Targets accepted by the ISPC compiler's --target flag.
SUPPORTED_TARGETS = (
    "host",
    "sse2-i32x4",
    "sse2-i32x8",
    "sse4-i8x16",
    "sse4-i16x8",
    "sse4-i32x4",
    "sse4-i32x8",
    "avx1-i32x4",
    "avx1-i32x8",
    "avx1-i32x16",
    "avx1-i64x4",
    "avx2-i8x32",
    "avx2-i16x16",
    "avx2-i32x4",
    "avx2-i32x8",
    "avx2-i32x16",
    "avx2-i64x4",
    "avx2vnni-i32x4",
    "avx2vnni-i32x8",
    "avx2vnni-i32x16",
    "avx512knl-x16",
    "avx512skx-x4",
    "avx512skx-x8",
    "avx512skx-x16",
    "avx512skx-x32",
    "avx512skx-x64",
    "avx512icl-x4",
    "avx512icl-x8",
    "avx512icl-x16",
    "avx512icl-x32",
    "avx512icl-x64",
    "avx512spr-x4",
    "avx512spr-x8",
    "avx512spr-x16",
    "avx512spr-x32",
    "avx512spr-x64",
    "neon-i8x16",
    "neon-i16x8",
    "neon-i32x4",
    "neon-i32x8",
    "wasm-i32x4",
)


def isa_family(isa: str) -> str:
    """Return the instruction-set family of a target, e.g. ``avx2`` for ``avx2-i32x8``."""
    return isa.split("-", 1)[0]


def isa_object_suffix(isa: str) -> str:
    """Suffix ISPC appends to per-target objects of a multi-target compile."""
    family = isa_family(isa)
    if family == "avx1":
        return "_avx"
    return f"_{family}"


def isa_tag(isa: str) -> str:
    return isa.replace("-", "_")


@dataclass(frozen=True, slots=True)
class Define:
    name: str
    value: str | None = None
    sources: tuple[str, ...] = ()

    def flag(self) -> str:
        if self.value is None:
            return f"-D{self.name}"
        return f"-D{self.name}={self.value}"

    def applies_to(self, source_key: str) -> bool:
        return not self.sources or source_key in self.sources


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Immutable build intent produced by :meth:`ispcbuild.config.Config.finalize`."""

    name: str
    source_root: Path
    sources: tuple[Path, ...]
    include_paths: tuple[Path, ...]
    defines: tuple[Define, ...]
    optimization: OptimizationLevel
    targets: tuple[str, ...]
    debug: bool
    math_lib: MathLib
    output_dir: Path
    extra_flags: tuple[str, ...] = ()
    link_flags: tuple[str, ...] = ()
    addressing: Addressing = 64
    cpu: str | None = None
    target_os: str | None = None
    options: tuple[str, ...] = ()
    werror: bool = False
    wno_perf: bool = False
    instrument: bool = False
    dispatch: DispatchMode = "batched"
    batch_limit: int = 8
    tasking: TaskingMode = "serial"
    jobs: int | None = None

    def source_key(self, source: Path) -> str:
        """Stable relative key for *source*, used in unit identities."""
        try:
            return source.relative_to(self.source_root).as_posix()
        except ValueError:
            return source.as_posix()

    def source_for_key(self, key: str) -> Path:
        path = Path(key)
        if path.is_absolute():
            return path
        return self.source_root / path

    def defines_for(self, source_key: str) -> tuple[Define, ...]:
        return tuple(define for define in self.defines if define.applies_to(source_key))

    @property
    def cache_path(self) -> Path:
        return self.output_dir / ".ispcbuild-cache.json"

    @property
    def report_path(self) -> Path:
        return self.output_dir / "report.json"

    @property
    def object_suffix(self) -> str:
        return ".obj" if self.target_os == "windows" else ".o"

    @property
    def library_filename(self) -> str:
        if self.target_os == "windows":
            return f"{self.name}.lib"
        return f"lib{self.name}.a"


@dataclass(frozen=True, slots=True)
class TargetUnit:
    """One compiler invocation: a source file and the ISA subset it is built for."""

    source: Path
    source_key: str
    isas: tuple[str, ...]
    object_path: Path
    header_path: Path
    deps_path: Path

    @property
    def identity(self) -> str:
        return f"{self.source_key}@{'+'.join(sorted(self.isas))}"

    @property
    def is_multi_target(self) -> bool:
        return len(self.isas) > 1

    def auxiliary_objects(self) -> tuple[Path, ...]:
        """Per-target objects written next to the dispatch object of a multi-target compile."""
        if not self.is_multi_target:
            return ()
        stem = self.object_path.stem
        return tuple(
            self.object_path.with_name(f"{stem}{isa_object_suffix(isa)}{self.object_path.suffix}")
            for isa in self.isas
        )


@dataclass(frozen=True, slots=True)
class CompiledArtifact:
    unit: TargetUnit
    object_path: Path
    header_path: Path
    symbols: tuple[str, ...] = ()
    auxiliary_objects: tuple[Path, ...] = ()
    cached: bool = False

    @property
    def objects(self) -> tuple[Path, ...]:
        return (self.object_path, *self.auxiliary_objects)


@dataclass(frozen=True, slots=True)
class ArtifactMarker:
    name: str
    version: str
    targets: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PrebuiltArtifactSet:
    library_path: Path
    header_path: Path
    marker: ArtifactMarker
    location: Path


@dataclass(slots=True)
class BuildResult:
    library_path: Path
    bindings_path: Path
    mode: BuildMode
    header_path: Path
    artifacts: tuple[CompiledArtifact, ...] = ()
    prebuilt: PrebuiltArtifactSet | None = None
    compiled_units: tuple[str, ...] = ()
    cached_units: tuple[str, ...] = ()
    report_path: Path | None = None

    def outputs(self) -> tuple[Path, Path]:
        """The two paths handed back to the surrounding build."""
        return self.library_path, self.bindings_path
