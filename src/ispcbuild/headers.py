"""Parsing and merging of compiler-generated C headers."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, cast

from .errors import HeaderConflictError, ToolchainContractError

DeclKind = Literal["function", "struct", "enum", "union", "typedef", "forward", "variable"]

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"//[^\n]*")
_WRAPPER = re.compile(r'^(extern\s+"C(\+\+)?"|namespace(\s+\w+)?)$')
_ALIGNED_STRUCT = re.compile(r"__ISPC_ALIGNED_STRUCT__\s*\(\s*\d+\s*\)\s*(\w+)")
_TAGGED = re.compile(r"\b(struct|enum|union)\s+(\w+)")
_FUNCTION_POINTER = re.compile(r"\(\s*\*\s*(\w+)\s*\)")
_IDENTIFIER = re.compile(r"[A-Za-z_]\w*")
_WHITESPACE = re.compile(r"\s+")

ISPC_ALIGN_PREAMBLE = """\
#ifndef __ISPC_ALIGN__
#if defined(__clang__) || !defined(_MSC_VER)
#define __ISPC_ALIGN__(s) __attribute__((aligned(s)))
#define __ISPC_ALIGNED_STRUCT__(s) struct __ISPC_ALIGN__(s)
#else
#define __ISPC_ALIGN__(s) __declspec(align(s))
#define __ISPC_ALIGNED_STRUCT__(s) __ISPC_ALIGN__(s) struct
#endif
#endif
"""


@dataclass(frozen=True, slots=True)
class Declaration:
    """One top-level declaration from a generated header."""

    kind: DeclKind
    name: str
    text: str

    @property
    def key(self) -> str:
        if self.kind in ("function", "variable", "typedef"):
            return self.name
        return f"{self.kind} {self.name}"

    @property
    def normalized(self) -> str:
        return normalize(self.text)


@dataclass(frozen=True, slots=True)
class MergedHeader:
    path: Path
    declarations: tuple[Declaration, ...]

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(decl.name for decl in self.declarations if decl.kind == "function")


def normalize(text: str) -> str:
    collapsed = _WHITESPACE.sub(" ", text).strip()
    return re.sub(r"\s*([(){}\[\],;*])\s*", r"\1", collapsed)


def parse_header(text: str) -> tuple[Declaration, ...]:
    """Split header text into top-level declarations.

    Comments and preprocessor lines are dropped; ``extern "C"`` and
    ``namespace`` blocks are treated as transparent wrappers.
    """
    code = _strip_preprocessor(_LINE_COMMENT.sub("", _BLOCK_COMMENT.sub(" ", text)))
    declarations: list[Declaration] = []
    buffer: list[str] = []
    stack: list[bool] = []  # True for transparent wrapper braces
    depth = 0
    for char in code:
        if char == "{" and depth == 0 and _WRAPPER.match("".join(buffer).strip()):
            stack.append(True)
            buffer.clear()
            continue
        if char == "}" and depth == 0 and stack and stack[-1]:
            stack.pop()
            buffer.clear()
            continue
        buffer.append(char)
        if char == "{":
            depth += 1
            stack.append(False)
        elif char == "}":
            depth = max(depth - 1, 0)
            if stack:
                stack.pop()
        elif char == ";" and depth == 0:
            statement = "".join(buffer).strip()
            buffer.clear()
            if statement and statement != ";":
                declarations.append(_classify(statement))
    return tuple(declarations)


def exported_symbols(header: Path) -> tuple[str, ...]:
    text = header.read_text(encoding="utf-8", errors="replace")
    return tuple(decl.name for decl in parse_header(text) if decl.kind == "function")


def merge_headers(
    headers: Iterable[tuple[str, Path]],
    *,
    output: Path,
    guard: str,
) -> MergedHeader:
    """Merge ``(unit identity, header path)`` pairs into one header at *output*.

    Identical declarations are written once. A symbol declared with two
    different texts raises :class:`HeaderConflictError` before anything is
    written.
    """
    merged: dict[str, Declaration] = {}
    owners: dict[str, str] = {}
    for identity, path in headers:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ToolchainContractError(
                "Generated header is missing.",
                hint="Delete the output directory and rebuild.",
                context={"unit": identity, "header": str(path)},
            ) from exc
        for decl in parse_header(text):
            existing = merged.get(decl.key)
            if existing is None:
                merged[decl.key] = decl
                owners[decl.key] = identity
                continue
            if existing.normalized == decl.normalized:
                continue
            raise HeaderConflictError(
                "Symbol is declared with incompatible signatures.",
                hint=(
                    "A stale cache or inconsistent per-unit defines produced diverging "
                    "headers; rebuild from a clean output directory."
                ),
                context={
                    "symbol": decl.key,
                    "first_unit": owners[decl.key],
                    "first": existing.normalized,
                    "second_unit": identity,
                    "second": decl.normalized,
                },
            )
    declarations = tuple(merged.values())
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(render_header(declarations, guard=guard), encoding="utf-8")
    return MergedHeader(path=output, declarations=declarations)


def render_header(declarations: Iterable[Declaration], *, guard: str) -> str:
    macro = re.sub(r"\W", "_", guard).upper()
    lines = [
        "// Generated by ispcbuild. Do not edit.",
        f"#ifndef {macro}",
        f"#define {macro}",
        "",
        "#include <stdint.h>",
        "",
        ISPC_ALIGN_PREAMBLE,
        "#if defined(__cplusplus)",
        'extern "C" {',
        "#endif",
        "",
    ]
    for decl in declarations:
        lines.append(decl.text)
        lines.append("")
    lines.extend(
        [
            "#if defined(__cplusplus)",
            "}",
            "#endif",
            "",
            f"#endif // {macro}",
            "",
        ]
    )
    return "\n".join(lines)


def _strip_preprocessor(code: str) -> str:
    kept: list[str] = []
    continuing = False
    for line in code.splitlines():
        stripped = line.strip()
        if continuing or stripped.startswith("#"):
            continuing = stripped.endswith("\\")
            continue
        kept.append(line)
    return "\n".join(kept)


def _classify(statement: str) -> Declaration:
    text = _dedent_statement(statement)
    head = statement.split("{", 1)[0]
    if statement.startswith("typedef"):
        pointer = _FUNCTION_POINTER.search(statement)
        if pointer is not None:
            return Declaration(kind="typedef", name=pointer.group(1), text=text)
        tail = statement.rsplit("}", 1)[-1] if "}" in statement else statement
        names = _IDENTIFIER.findall(tail.rstrip(";"))
        return Declaration(kind="typedef", name=names[-1] if names else "", text=text)
    if "{" in statement:
        aligned = _ALIGNED_STRUCT.search(head)
        if aligned is not None:
            return Declaration(kind="struct", name=aligned.group(1), text=text)
        tagged = _TAGGED.search(head)
        if tagged is not None:
            kind = cast(DeclKind, tagged.group(1))
            return Declaration(kind=kind, name=tagged.group(2), text=text)
    if "(" in head:
        names = _IDENTIFIER.findall(head.split("(", 1)[0])
        return Declaration(kind="function", name=names[-1] if names else "", text=text)
    tagged = _TAGGED.fullmatch(statement.rstrip(";").strip())
    if tagged is not None:
        return Declaration(kind="forward", name=f"{tagged.group(1)} {tagged.group(2)}", text=text)
    names = _IDENTIFIER.findall(statement.split("[", 1)[0])
    return Declaration(kind="variable", name=names[-1] if names else "", text=text)


def _dedent_statement(statement: str) -> str:
    lines = [line.rstrip() for line in statement.splitlines() if line.strip()]
    if len(lines) <= 1:
        return statement.strip()
    indents = [len(line) - len(line.lstrip()) for line in lines[1:]]
    closing = min(indents) if indents else 0
    body = [lines[0].strip()]
    for line in lines[1:]:
        body.append(line[closing:])
    return "\n".join(body)
