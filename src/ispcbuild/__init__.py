"""Pre-build orchestration for ISPC kernel libraries."""

from ._version import __version__
from .bindings import CdefSignatureGenerator, ProcessSignatureGenerator, SignatureGenerator
from .compiler import CodeGenerator, ProcessCodeGenerator, StubCodeGenerator
from .config import BuildOverrides, Config
from .errors import (
    ArtifactNotFoundError,
    ArtifactVersionMismatchError,
    BindingGenerationError,
    BuildIOError,
    CompileError,
    ConfigError,
    ErrorCode,
    HeaderConflictError,
    IncompleteConfigError,
    IspcBuildError,
    LinkError,
    ToolchainContractError,
    UnsupportedTargetError,
)
from .linker import NativeToolchain, ProcessToolchain, StubToolchain
from .models import BuildConfig, BuildResult, CompiledArtifact, PrebuiltArtifactSet, TargetUnit
from .observability import StructuredLogger
from .pipeline import BuildPass, build
from .report import BuildReport

__all__ = [
    "ArtifactNotFoundError",
    "ArtifactVersionMismatchError",
    "BindingGenerationError",
    "BuildConfig",
    "BuildIOError",
    "BuildOverrides",
    "BuildPass",
    "BuildReport",
    "BuildResult",
    "CdefSignatureGenerator",
    "CodeGenerator",
    "CompileError",
    "CompiledArtifact",
    "Config",
    "ConfigError",
    "ErrorCode",
    "HeaderConflictError",
    "IncompleteConfigError",
    "IspcBuildError",
    "LinkError",
    "NativeToolchain",
    "PrebuiltArtifactSet",
    "ProcessCodeGenerator",
    "ProcessSignatureGenerator",
    "ProcessToolchain",
    "SignatureGenerator",
    "StructuredLogger",
    "StubCodeGenerator",
    "StubToolchain",
    "TargetUnit",
    "ToolchainContractError",
    "UnsupportedTargetError",
    "__version__",
    "build",
]
