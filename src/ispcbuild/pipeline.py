"""One build pass: from finalized configuration to library and binding source."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path

from ._version import __version__
from .bindings import CdefSignatureGenerator, SignatureGenerator, emit_bindings
from .compiler import CodeGenerator, CompilerInvoker, ProcessCodeGenerator
from .config import BuildOverrides, Config
from .errors import BuildIOError
from .headers import merge_headers
from .linker import (
    LinkerDriver,
    NativeToolchain,
    ProcessToolchain,
    ensure_unique_symbols,
    glue_source,
    link_inputs,
)
from .matrix import expand_units
from .models import BuildConfig, BuildResult, CompiledArtifact, PrebuiltArtifactSet
from .observability import StructuredLogger
from .prebuilt import resolve_prebuilt
from .report import BuildReport
from .tracker import (
    DependencyTracker,
    FingerprintCache,
    FingerprintInput,
    digest_file,
    fingerprint,
)


@dataclass(slots=True)
class BuildPass:
    """Runs every stage for one library target and hands back two paths.

    ``overrides`` defaults to the process environment, so a surrounding build
    can force prebuilt mode or swap the compiler without touching the config.
    Prebuilt lookups fall back to ``<source root>/prebuilt`` when no
    ``package_dir`` is given.
    """

    config: BuildConfig
    code_generator: CodeGenerator | None = None
    toolchain: NativeToolchain = field(default_factory=ProcessToolchain)
    signature_generator: SignatureGenerator = field(default_factory=CdefSignatureGenerator)
    overrides: BuildOverrides = field(default_factory=BuildOverrides.from_env)
    prebuilt_version: str = __version__
    package_dir: Path | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _skipped: list[str] = field(init=False, default_factory=list, repr=False)

    @property
    def header_path(self) -> Path:
        return self.config.output_dir / "include" / f"{self.config.name}.h"

    @property
    def bindings_path(self) -> Path:
        return self.config.output_dir / "bindings" / (
            f"{self.config.name}{self.signature_generator.suffix}"
        )

    def run(self) -> BuildResult:
        self._skipped = []
        if self.overrides.force_prebuilt:
            result = self._run_prebuilt()
        else:
            result = self._run_source()
        result.report_path = self._write_report(result)
        return result

    def _run_source(self) -> BuildResult:
        config = self.config
        units = expand_units(config)
        self.logger.log(
            operation="expand_units",
            stage="expand",
            message="Expanded target matrix.",
            extra={"units": [unit.identity for unit in units]},
        )
        generator = self.code_generator or ProcessCodeGenerator(
            executable=self.overrides.compiler or "ispc"
        )
        cache = FingerprintCache.load(config.cache_path, logger=self.logger)
        tracker = DependencyTracker(
            config=config,
            cache=cache,
            compiler=generator.identity(),
            logger=self.logger,
        )
        invoker = CompilerInvoker(
            config=config,
            generator=generator,
            logger=self.logger,
            jobs=self.overrides.jobs or config.jobs,
        )

        stale = [unit for unit in units if tracker.needs_rebuild(unit)]
        compiled = invoker.compile_all(stale)
        for unit in stale:
            tracker.record(unit)

        artifacts: list[CompiledArtifact] = []
        for unit in units:
            artifact = compiled.get(unit.identity)
            artifacts.append(artifact if artifact is not None else invoker.cached_artifact(unit))

        header = merge_headers(
            ((artifact.unit.identity, artifact.header_path) for artifact in artifacts),
            output=self.header_path,
            guard=f"ISPCBUILD_{config.name}_H",
        )
        self.logger.log(
            operation="merge_headers",
            stage="merge",
            message="Merged unit headers.",
            extra={"header": str(header.path), "declarations": len(header.declarations)},
        )
        ensure_unique_symbols(artifacts)

        library = self._link(tracker, link_inputs(artifacts))
        bindings = self._bindings(tracker, header.path)
        tracker.flush()
        return BuildResult(
            library_path=library,
            bindings_path=bindings,
            mode="source",
            header_path=header.path,
            artifacts=tuple(artifacts),
            compiled_units=tuple(unit.identity for unit in stale),
            cached_units=tuple(unit.identity for unit in units if unit not in stale),
        )

    def _run_prebuilt(self) -> BuildResult:
        config = self.config
        prebuilt = resolve_prebuilt(
            config.name,
            version=self.prebuilt_version,
            targets=config.targets,
            override=self.overrides.prebuilt_dir,
            package_dir=self.package_dir or config.source_root,
            target_os=config.target_os,
        )
        self.logger.log(
            operation="resolve_prebuilt",
            stage="prebuilt",
            message="Using prebuilt artifact set.",
            extra={"location": str(prebuilt.location), "version": prebuilt.marker.version},
        )
        cache = FingerprintCache.load(config.cache_path, logger=self.logger)
        tracker = DependencyTracker(
            config=config,
            cache=cache,
            compiler="prebuilt",
            logger=self.logger,
        )
        header = merge_headers(
            [(f"prebuilt:{prebuilt.location}", prebuilt.header_path)],
            output=self.header_path,
            guard=f"ISPCBUILD_{config.name}_H",
        )
        library = self._link(tracker, (prebuilt.library_path,))
        bindings = self._bindings(tracker, header.path)
        tracker.flush()
        return BuildResult(
            library_path=library,
            bindings_path=bindings,
            mode="prebuilt",
            header_path=header.path,
            prebuilt=prebuilt,
        )

    def _link(self, tracker: DependencyTracker, inputs: tuple[Path, ...]) -> Path:
        driver = LinkerDriver(config=self.config, toolchain=self.toolchain, logger=self.logger)
        identity = f"link:{self.config.library_filename}"
        glue = glue_source(self.config.tasking)
        value = fingerprint(
            FingerprintInput(
                identity=identity,
                source_sha256=hashlib.sha256(glue.encode("utf-8")).hexdigest(),
                compiler=self.toolchain.identity(),
                flags=self.config.link_flags,
                dependencies=tuple((str(path), digest_file(path)) for path in inputs),
            )
        )
        if tracker.stage_current(identity, value, (driver.library_path,)):
            self._skip(identity, stage="link")
            return driver.library_path
        return driver.link(inputs)

    def _bindings(self, tracker: DependencyTracker, header: Path) -> Path:
        identity = f"bindings:{self.config.name}"
        value = fingerprint(
            FingerprintInput(
                identity=identity,
                source_sha256=digest_file(header),
                compiler=self.signature_generator.name,
                flags=(
                    *(define.flag() for define in self.config.defines),
                    *(f"-I{path}" for path in self.config.include_paths),
                ),
            )
        )
        if tracker.stage_current(identity, value, (self.bindings_path,)):
            self._skip(identity, stage="bindings")
            return self.bindings_path
        path = emit_bindings(
            self.signature_generator,
            header,
            output_dir=self.bindings_path.parent,
            name=self.config.name,
            defines=self.config.defines,
            include_paths=self.config.include_paths,
        )
        self.logger.log(
            operation="emit_bindings",
            stage="bindings",
            message="Generated binding source.",
            extra={"generator": self.signature_generator.name, "output": str(path)},
        )
        return path

    def _skip(self, identity: str, *, stage: str) -> None:
        self._skipped.append(identity)
        self.logger.log(
            operation="stage_skipped",
            stage=stage,
            message="Outputs are current; stage skipped.",
            extra={"identity": identity},
        )

    def _write_report(self, result: BuildResult) -> Path:
        report = build_report(
            self.config,
            result,
            skipped_stages=tuple(self._skipped),
            logger=self.logger,
        )
        try:
            report.to_json(self.config.report_path)
        except OSError as exc:
            raise BuildIOError(
                "Could not write the build report.",
                context={"path": str(self.config.report_path), "error": str(exc)},
            ) from exc
        return self.config.report_path


def build_report(
    config: BuildConfig,
    result: BuildResult,
    *,
    skipped_stages: tuple[str, ...] = (),
    logger: StructuredLogger | None = None,
) -> BuildReport:
    digests = {
        "library": digest_file(result.library_path),
        "header": digest_file(result.header_path),
        "bindings": digest_file(result.bindings_path),
    }
    prebuilt: PrebuiltArtifactSet | None = result.prebuilt
    return BuildReport(
        name=config.name,
        mode=result.mode,
        library_path=str(result.library_path),
        bindings_path=str(result.bindings_path),
        header_path=str(result.header_path),
        compiled_units=result.compiled_units,
        cached_units=result.cached_units,
        skipped_stages=skipped_stages,
        artifact_digests=digests,
        prebuilt_location=str(prebuilt.location) if prebuilt is not None else None,
        logs=tuple(logger.records) if logger is not None else (),
    )


def build(
    config: Config | BuildConfig,
    *,
    code_generator: CodeGenerator | None = None,
    toolchain: NativeToolchain | None = None,
    signature_generator: SignatureGenerator | None = None,
    overrides: BuildOverrides | None = None,
    package_dir: Path | None = None,
    logger: StructuredLogger | None = None,
) -> tuple[Path, Path]:
    """Run one build pass and return ``(library path, binding source path)``."""
    finalized = config.finalize() if isinstance(config, Config) else config
    build_pass = BuildPass(
        config=finalized,
        code_generator=code_generator,
        toolchain=toolchain or ProcessToolchain(),
        signature_generator=signature_generator or CdefSignatureGenerator(),
        overrides=overrides if overrides is not None else BuildOverrides.from_env(),
        package_dir=package_dir,
        logger=logger or StructuredLogger(),
    )
    return build_pass.run().outputs()
