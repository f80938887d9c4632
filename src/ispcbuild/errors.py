"""Typed build error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across the build pass."""

    CONFIG = "E_CONFIG"
    UNSUPPORTED_TARGET = "E_UNSUPPORTED_TARGET"
    INCOMPLETE_CONFIG = "E_INCOMPLETE_CONFIG"
    COMPILE = "E_COMPILE"
    TOOLCHAIN_CONTRACT = "E_TOOLCHAIN_CONTRACT"
    LINK = "E_LINK"
    HEADER_CONFLICT = "E_HEADER_CONFLICT"
    BINDING_GENERATION = "E_BINDING_GENERATION"
    ARTIFACT_NOT_FOUND = "E_ARTIFACT_NOT_FOUND"
    ARTIFACT_VERSION_MISMATCH = "E_ARTIFACT_VERSION_MISMATCH"
    IO = "E_IO"


class IspcBuildError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class _CodedError(IspcBuildError):
    _code: ErrorCode

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=self._code, hint=hint, context=context)


class ConfigError(_CodedError):
    _code = ErrorCode.CONFIG


class UnsupportedTargetError(_CodedError):
    _code = ErrorCode.UNSUPPORTED_TARGET


class IncompleteConfigError(_CodedError):
    _code = ErrorCode.INCOMPLETE_CONFIG


class CompileError(_CodedError):
    """The external compiler exited nonzero for one unit."""

    _code = ErrorCode.COMPILE


class ToolchainContractError(_CodedError):
    """A tool exited zero but did not produce its declared outputs."""

    _code = ErrorCode.TOOLCHAIN_CONTRACT


class LinkError(_CodedError):
    _code = ErrorCode.LINK


class HeaderConflictError(_CodedError):
    _code = ErrorCode.HEADER_CONFLICT


class BindingGenerationError(_CodedError):
    _code = ErrorCode.BINDING_GENERATION


class ArtifactNotFoundError(_CodedError):
    _code = ErrorCode.ARTIFACT_NOT_FOUND


class ArtifactVersionMismatchError(_CodedError):
    _code = ErrorCode.ARTIFACT_VERSION_MISMATCH


class BuildIOError(_CodedError):
    """Filesystem failure while preparing build outputs."""

    _code = ErrorCode.IO


__all__ = [
    "ArtifactNotFoundError",
    "ArtifactVersionMismatchError",
    "BindingGenerationError",
    "BuildIOError",
    "CompileError",
    "ConfigError",
    "ErrorCode",
    "HeaderConflictError",
    "IncompleteConfigError",
    "IspcBuildError",
    "LinkError",
    "ToolchainContractError",
    "UnsupportedTargetError",
]
