"""Sandboxed compilation of model-generated visualization components."""

from .jsx_sandbox import (
    RenderableComponent,
    SandboxError,
    SandboxExecutionError,
    SandboxTranspileError,
    SandboxUnavailableError,
    SandboxValidationError,
    execute,
)
from .artifacts import ArtifactCompiler, get_artifact_compiler, reset_artifact_compiler

__all__ = [
    "RenderableComponent",
    "SandboxError",
    "SandboxExecutionError",
    "SandboxTranspileError",
    "SandboxUnavailableError",
    "SandboxValidationError",
    "execute",
    "ArtifactCompiler",
    "get_artifact_compiler",
    "reset_artifact_compiler",
]
