"""Fingerprint derivation and the per-pass sidecar cache."""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import warnings
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .compiler import compile_flags
from .errors import BuildIOError, ConfigError
from .models import BuildConfig, TargetUnit
from .observability import StructuredLogger

STAGE_PREFIXES = ("link:", "bindings:")

_DEPFILE_SPLIT = re.compile(r"(?<!\\)\s+")


@dataclass(frozen=True, slots=True)
class FingerprintInput:
    identity: str
    source_sha256: str
    compiler: str
    flags: tuple[str, ...] = ()
    dependencies: tuple[tuple[str, str], ...] = ()


def fingerprint(inputs: FingerprintInput) -> str:
    canonical = json.dumps(_to_payload(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _to_payload(inputs: FingerprintInput) -> dict[str, Any]:
    return {
        "identity": inputs.identity,
        "source_sha256": inputs.source_sha256,
        "compiler": inputs.compiler,
        "flags": list(inputs.flags),
        "dependencies": [list(item) for item in inputs.dependencies],
    }


def digest_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 16), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def parse_depfile(text: str) -> tuple[str, ...]:
    """Return the prerequisites listed in a Make-style dependency file."""
    joined = text.replace("\\\r\n", " ").replace("\\\n", " ")
    prerequisites: list[str] = []
    for line in joined.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        parts = re.split(r":(?:\s+|$)", line, maxsplit=1)
        if len(parts) != 2:
            continue
        for token in _DEPFILE_SPLIT.split(parts[1].strip()):
            if token:
                prerequisites.append(token.replace("\\ ", " "))
    return tuple(dict.fromkeys(prerequisites))


@dataclass(slots=True)
class FingerprintCache:
    """Flat ``identity -> fingerprint`` mapping persisted next to the build outputs.

    Loaded once per pass. Updates are buffered in memory and only reach disk
    through :meth:`flush`, which replaces the file atomically.
    """

    path: Path
    entries: dict[str, str] = field(default_factory=dict)
    pending: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path, *, logger: StructuredLogger | None = None) -> FingerprintCache:
        if not path.exists():
            return cls(path=path)
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            return cls._degraded(path, reason=str(exc), logger=logger)
        if not isinstance(parsed, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in parsed.items()
        ):
            return cls._degraded(path, reason="unexpected structure", logger=logger)
        return cls(path=path, entries=dict(parsed))

    @classmethod
    def _degraded(
        cls,
        path: Path,
        *,
        reason: str,
        logger: StructuredLogger | None,
    ) -> FingerprintCache:
        warnings.warn(
            f"Ignoring unreadable fingerprint cache {path}: {reason}. All units will rebuild.",
            RuntimeWarning,
            stacklevel=3,
        )
        if logger is not None:
            logger.log(
                operation="cache_degraded",
                stage="track",
                level="warning",
                message="Fingerprint cache is unreadable; treating it as empty.",
                extra={"path": str(path), "reason": reason},
            )
        return cls(path=path)

    def get(self, identity: str) -> str | None:
        return self.entries.get(identity)

    def stage(self, identity: str, value: str) -> None:
        self.pending[identity] = value

    def flush(self, *, keep: Iterable[str] = ()) -> Path:
        """Write previous entries merged with staged ones in a single rename.

        Previous entries are retained only when their identity is in *keep*.
        """
        retained = set(keep)
        merged = {key: value for key, value in self.entries.items() if key in retained}
        merged.update(self.pending)
        payload = json.dumps(dict(sorted(merged.items())), indent=2, sort_keys=True) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
        except OSError as exc:
            raise BuildIOError(
                "Could not write the fingerprint cache.",
                context={"path": str(self.path), "error": str(exc)},
            ) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise BuildIOError(
                "Could not write the fingerprint cache.",
                context={"path": str(self.path), "error": str(exc)},
            ) from exc
        self.entries = merged
        self.pending = {}
        return self.path


@dataclass(slots=True)
class DependencyTracker:
    """Decides per unit whether the artifacts from a previous pass are still valid."""

    config: BuildConfig
    cache: FingerprintCache
    compiler: str
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def fingerprint(self, unit: TargetUnit) -> str:
        try:
            source_sha256 = digest_file(unit.source)
        except FileNotFoundError as exc:
            raise ConfigError(
                "Kernel source disappeared during the build.",
                context={"unit": unit.identity, "path": str(unit.source)},
            ) from exc
        return fingerprint(
            FingerprintInput(
                identity=unit.identity,
                source_sha256=source_sha256,
                compiler=self.compiler,
                flags=compile_flags(unit, self.config),
                dependencies=self._dependency_digests(unit),
            )
        )

    def needs_rebuild(self, unit: TargetUnit) -> bool:
        previous = self.cache.get(unit.identity)
        if previous is None:
            return self._miss(unit, reason="no cached fingerprint")
        if previous != self.fingerprint(unit):
            return self._miss(unit, reason="fingerprint changed")
        for output in (unit.object_path, unit.header_path, *unit.auxiliary_objects()):
            if not output.is_file():
                return self._miss(unit, reason=f"missing output {output.name}")
        self.cache.stage(unit.identity, previous)
        self.logger.log(
            operation="cache_hit",
            stage="track",
            unit=unit.identity,
            message="Reusing artifacts from a previous pass.",
        )
        return False

    def record(self, unit: TargetUnit) -> None:
        """Buffer the fingerprint of a freshly compiled unit."""
        self.cache.stage(unit.identity, self.fingerprint(unit))

    def stage_current(self, identity: str, value: str, outputs: Iterable[Path]) -> bool:
        """Gate a link or binding step on *value*; returns True when it can be skipped."""
        current = self.cache.get(identity) == value and all(path.is_file() for path in outputs)
        self.cache.stage(identity, value)
        return current

    def flush(self) -> Path:
        keep = [identity for identity in self.cache.entries if self._still_relevant(identity)]
        return self.cache.flush(keep=keep)

    def _still_relevant(self, identity: str) -> bool:
        if identity.startswith(STAGE_PREFIXES):
            return True
        source_key = identity.rsplit("@", 1)[0]
        return self.config.source_for_key(source_key).is_file()

    def _dependency_digests(self, unit: TargetUnit) -> tuple[tuple[str, str], ...]:
        if not unit.deps_path.is_file():
            return ()
        try:
            listed = parse_depfile(unit.deps_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError):
            return ()
        digests: list[tuple[str, str]] = []
        for raw in listed:
            path = Path(raw)
            if path == unit.source:
                continue
            try:
                digests.append((raw, digest_file(path)))
            except OSError:
                digests.append((raw, "missing"))
        return tuple(digests)

    def _miss(self, unit: TargetUnit, *, reason: str) -> bool:
        self.logger.log(
            operation="cache_miss",
            stage="track",
            unit=unit.identity,
            message="Unit needs rebuilding.",
            extra={"reason": reason},
        )
        return True
