"""
Structured error types for sync-testbed.

Every failure raised while provisioning a test environment is a
``SyncTestbedError``. Each one carries a category, a structured context
(container, image, network, command, exit code) and the chained cause,
so a failed test session can report exactly what went wrong without
re-reading docker output.

Hierarchy::

    SyncTestbedError
    ├── ProvisioningError      container failed to start / never became ready
    │   └── DockerNotFoundError
    ├── MigrationError         schema tool exited non-zero
    └── ConfigurationError     malformed descriptor, missing settings

None of these errors are retryable. They propagate to the caller
uninterpreted; cleanup of containers that were already started is the
caller's job (see :class:`sync_testbed.workflow.ProvisioningSession`).

Example:
    >>> err = MigrationError("prisma exited with code 1", exit_code=1)
    >>> err.to_dict()["category"]
    'MIGRATION'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Classification of testbed failures."""

    PROVISIONING = "PROVISIONING"
    MIGRATION = "MIGRATION"
    CONFIGURATION = "CONFIGURATION"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error."""

    container: str | None = None
    image: str | None = None
    network: str | None = None
    command: str | None = None
    exit_code: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            key: value
            for key, value in (
                ("container", self.container),
                ("image", self.image),
                ("network", self.network),
                ("command", self.command),
                ("exit_code", self.exit_code),
            )
            if value is not None
        }
        result.update(self.extra)
        return result


class SyncTestbedError(Exception):
    """Base exception for all sync-testbed errors.

    Subclasses set ``default_category``. The original exception, when
    there is one, is kept both as ``cause`` and as ``__cause__``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        return False

    def with_context(self, **kwargs: Any) -> SyncTestbedError:
        """Add context to this error (fluent API).

        Usage:
            raise ProvisioningError("start failed").with_context(
                container="sync-testbed-postgres-1a2b",
                image="postgres:14",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "extra":
                setattr(self.context, key, value)
            else:
                self.context.extra[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialise for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
        }
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


class ProvisioningError(SyncTestbedError):
    """A container or network failed to start or never became ready."""

    default_category = ErrorCategory.PROVISIONING


class DockerNotFoundError(ProvisioningError):
    """The docker CLI is not available on PATH."""


class MigrationError(SyncTestbedError):
    """The schema migration subprocess exited with a non-zero status."""

    default_category = ErrorCategory.MIGRATION

    def __init__(self, message: str, *, exit_code: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.context.exit_code = exit_code


class ConfigurationError(SyncTestbedError):
    """Malformed connection descriptor, missing setting or misuse of a handle."""

    default_category = ErrorCategory.CONFIGURATION


__all__ = [
    "ConfigurationError",
    "DockerNotFoundError",
    "ErrorCategory",
    "ErrorContext",
    "MigrationError",
    "ProvisioningError",
    "SyncTestbedError",
]
