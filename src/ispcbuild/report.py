"""Per-pass build report with JSON and CBOR export."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import cbor2

from .models import BuildMode


@dataclass(frozen=True, slots=True)
class BuildReport:
    name: str
    mode: BuildMode
    library_path: str
    bindings_path: str
    header_path: str
    compiled_units: tuple[str, ...] = ()
    cached_units: tuple[str, ...] = ()
    skipped_stages: tuple[str, ...] = ()
    artifact_digests: dict[str, str] = field(default_factory=dict)
    prebuilt_location: str | None = None
    logs: tuple[dict[str, Any], ...] = ()
    schema_version: int = 1

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    @classmethod
    def from_json(cls, text: str) -> BuildReport:
        payload = json.loads(text)
        return cls(
            name=payload["name"],
            mode=payload["mode"],
            library_path=payload["outputs"]["library"],
            bindings_path=payload["outputs"]["bindings"],
            header_path=payload["outputs"]["header"],
            compiled_units=tuple(payload["cache"]["misses"]),
            cached_units=tuple(payload["cache"]["hits"]),
            skipped_stages=tuple(payload["cache"]["skipped_stages"]),
            artifact_digests=dict(payload["artifact_digests"]),
            prebuilt_location=payload.get("prebuilt_location"),
            logs=tuple(payload.get("logs", ())),
            schema_version=int(payload.get("schema_version", 1)),
        )

    def _payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "schema_version": self.schema_version,
            "name": self.name,
            "mode": self.mode,
            "outputs": {
                "library": self.library_path,
                "bindings": self.bindings_path,
                "header": self.header_path,
            },
            "cache": {
                "hits": list(self.cached_units),
                "misses": list(self.compiled_units),
                "skipped_stages": list(self.skipped_stages),
            },
            "artifact_digests": dict(sorted(self.artifact_digests.items())),
            "logs": [dict(record) for record in self.logs],
        }
        if self.prebuilt_location is not None:
            payload["prebuilt_location"] = self.prebuilt_location
        return payload


__all__ = ["BuildReport"]
