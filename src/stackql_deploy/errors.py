"""Error types raised by the deploy engine."""

from __future__ import annotations


class DeployError(Exception):
    """Base class for every failure that aborts a run."""


class ConfigurationError(DeployError):
    """Raised when the manifest, a query file, or a template is invalid."""


class TemplateRenderError(ConfigurationError):
    """Raised when a template references an undefined variable or fails to parse."""


class ExecutionError(DeployError):
    """Raised when a statement, script, or export fails after its retry budget."""


class InvariantViolation(DeployError):
    """Raised when the live system returns an ambiguous result."""


class ConvergenceError(DeployError):
    """Raised when a post-deploy or post-delete check does not confirm the change."""
