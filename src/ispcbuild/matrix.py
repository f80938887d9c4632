"""Expansion of a build configuration into concrete compiler invocations."""

from __future__ import annotations

import hashlib
from pathlib import Path, PurePosixPath

from .errors import ConfigError
from .models import BuildConfig, TargetUnit, isa_family, isa_tag


def expand_units(config: BuildConfig) -> tuple[TargetUnit, ...]:
    """Return the deterministic unit list for *config*.

    Units are ordered by source declaration order, then by ISA batch. The
    linker consumes objects in exactly this order.
    """
    units: list[TargetUnit] = []
    for source in config.sources:
        key = config.source_key(source)
        for isas in isa_batches(config):
            units.append(_make_unit(config, source=source, key=key, isas=isas))
    _ensure_unique_outputs(units)
    return tuple(units)


def isa_batches(config: BuildConfig) -> tuple[tuple[str, ...], ...]:
    """Group the requested targets into per-invocation ISA subsets.

    In ``per_isa`` mode each ISA is its own invocation. In ``batched`` mode
    targets are packed greedily in declaration order into chunks of at most
    ``batch_limit`` targets, with at most one target per ISA family in a
    chunk since the compiler rejects multi-target builds that repeat a family.
    """
    if config.dispatch == "per_isa":
        return tuple((isa,) for isa in config.targets)

    chunks: list[list[str]] = []
    for isa in config.targets:
        family = isa_family(isa)
        for chunk in chunks:
            if len(chunk) >= config.batch_limit:
                continue
            if any(isa_family(existing) == family for existing in chunk):
                continue
            chunk.append(isa)
            break
        else:
            chunks.append([isa])
    return tuple(tuple(sorted(chunk)) for chunk in chunks)


def output_stem(source_key: str, isas: tuple[str, ...]) -> str:
    """Pure function of the relative source path and the sorted ISA subset."""
    digest = hashlib.sha256(source_key.encode("utf-8")).hexdigest()[:10]
    stem = PurePosixPath(source_key).stem or "kernel"
    tag = "-".join(isa_tag(isa) for isa in sorted(isas))
    return f"{stem}-{digest}.{tag}"


def _make_unit(
    config: BuildConfig,
    *,
    source: Path,
    key: str,
    isas: tuple[str, ...],
) -> TargetUnit:
    stem = output_stem(key, isas)
    return TargetUnit(
        source=source,
        source_key=key,
        isas=isas,
        object_path=config.output_dir / "obj" / f"{stem}{config.object_suffix}",
        header_path=config.output_dir / "include" / f"{stem}.h",
        deps_path=config.output_dir / "deps" / f"{stem}.d",
    )


def _ensure_unique_outputs(units: list[TargetUnit]) -> None:
    seen: dict[str, str] = {}
    for unit in units:
        outputs = (unit.object_path, unit.header_path, unit.deps_path, *unit.auxiliary_objects())
        for path in outputs:
            owner = seen.get(str(path))
            if owner is not None and owner != unit.identity:
                raise ConfigError(
                    "Two units resolve to the same output path.",
                    context={"path": str(path), "first": owner, "second": unit.identity},
                )
            seen[str(path)] = unit.identity
