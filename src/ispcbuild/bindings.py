"""Hand-off of the merged header to a signature generator."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .errors import BindingGenerationError
from .headers import parse_header
from .models import Define

_ALIGNED_STRUCT = re.compile(r"__ISPC_ALIGNED_STRUCT__\s*\(\s*\d+\s*\)")
_INTEGER = re.compile(r"^-?(0x[0-9a-fA-F]+|\d+)$")


class SignatureGenerator(Protocol):
    name: str
    suffix: str

    def generate(
        self,
        header: Path,
        *,
        output: Path,
        defines: tuple[Define, ...],
        include_paths: tuple[Path, ...],
    ) -> Path:
        """Produce caller-language declarations for *header* at *output*."""


@dataclass(slots=True)
class ProcessSignatureGenerator:
    """Runs a bindgen-style CLI: ``tool HEADER -o OUT [args] -- -D.. -I..``."""

    tool: str = "bindgen"
    extra_args: tuple[str, ...] = ()
    name: str = "bindgen"
    suffix: str = ".rs"

    def command(
        self,
        header: Path,
        *,
        output: Path,
        defines: tuple[Define, ...],
        include_paths: tuple[Path, ...],
    ) -> tuple[str, ...]:
        return (
            self.tool,
            str(header),
            "-o",
            str(output),
            *self.extra_args,
            "--",
            *(define.flag() for define in defines),
            *(f"-I{path}" for path in include_paths),
        )

    def generate(
        self,
        header: Path,
        *,
        output: Path,
        defines: tuple[Define, ...],
        include_paths: tuple[Path, ...],
    ) -> Path:
        command = self.command(
            header,
            output=output,
            defines=defines,
            include_paths=include_paths,
        )
        try:
            result = subprocess.run(list(command), capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise BindingGenerationError(
                "Signature generator executable was not found.",
                hint=f"Install {self.tool} or configure a different signature generator.",
                context={"generator": self.name, "command": " ".join(command)},
            ) from exc
        if result.returncode != 0:
            raise BindingGenerationError(
                "Signature generation failed.",
                hint="Run the command below by hand to reproduce the failure.",
                context={
                    "generator": self.name,
                    "command": " ".join(command),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                },
            )
        if not output.is_file():
            raise BindingGenerationError(
                "Signature generator reported success but wrote no output.",
                context={"generator": self.name, "output": str(output)},
            )
        return output


@dataclass(slots=True)
class CdefSignatureGenerator:
    """Writes preprocessor-free declarations suitable for ``cffi.FFI.cdef``.

    Integer-valued defines are emitted as ``#define`` constants, which is the
    only preprocessor form cdef understands.
    """

    name: str = "cffi-cdef"
    suffix: str = ".cdef.h"
    calls: list[Path] = field(default_factory=list)

    def generate(
        self,
        header: Path,
        *,
        output: Path,
        defines: tuple[Define, ...],
        include_paths: tuple[Path, ...],
    ) -> Path:
        self.calls.append(header)
        try:
            text = header.read_text(encoding="utf-8")
        except OSError as exc:
            raise BindingGenerationError(
                "Merged header could not be read.",
                context={"generator": self.name, "header": str(header), "error": str(exc)},
            ) from exc
        lines = [f"/* cffi declarations for {header.name}. Generated by ispcbuild. */"]
        for define in defines:
            if define.value is not None and _INTEGER.fullmatch(define.value):
                lines.append(f"#define {define.name} {define.value}")
        for decl in parse_header(text):
            lines.append(_ALIGNED_STRUCT.sub("struct", decl.text))
        try:
            output.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as exc:
            raise BindingGenerationError(
                "Binding source could not be written.",
                context={"generator": self.name, "output": str(output), "error": str(exc)},
            ) from exc
        return output


def emit_bindings(
    generator: SignatureGenerator,
    header: Path,
    *,
    output_dir: Path,
    name: str,
    defines: tuple[Define, ...],
    include_paths: tuple[Path, ...],
) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    output = output_dir / f"{name}{generator.suffix}"
    try:
        return generator.generate(
            header,
            output=output,
            defines=defines,
            include_paths=include_paths,
        )
    except BindingGenerationError:
        raise
    except Exception as exc:
        raise BindingGenerationError(
            "Signature generator raised an unexpected error.",
            context={"generator": generator.name, "header": str(header), "error": repr(exc)},
        ) from exc
