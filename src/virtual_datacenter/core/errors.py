"""
Error taxonomy.

We separate error types so callers can react correctly.
Example:
ValidationError blocks before any resource is created.
AllocationConflict stops a deployment that would collide with another VDC.
ControlPlaneError is raised by adapters for one resource; the pipeline
records it and moves on to the next resource.

ConsistencyWarning is not an exception. It is a record carried in reports
so drift is always visible without failing the run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class OrchestratorError(Exception):
    """
    Base class for all orchestrator exceptions.

    stage and resource are optional context so user facing output can name
    where a failure happened.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.resource = resource

    def __str__(self) -> str:
        parts = []
        if self.stage:
            parts.append(f"[{self.stage}]")
        if self.resource:
            parts.append(f"{self.resource}:")
        parts.append(self.message)
        return " ".join(parts)


class ValidationError(OrchestratorError):
    """Raised when the topology document is malformed or inconsistent."""

    def __init__(self, errors: List[str], stage: str = "validate") -> None:
        self.errors = list(errors)
        summary = self.errors[0] if len(self.errors) == 1 else f"{len(self.errors)} validation errors"
        super().__init__(summary, stage=stage)

    def __str__(self) -> str:
        if len(self.errors) == 1:
            return super().__str__()
        lines = [super().__str__()]
        lines.extend(f"  - {e}" for e in self.errors)
        return "\n".join(lines)


class AllocationConflict(OrchestratorError):
    """Raised when a VDC name or subnet collides with another VDC."""


class ControlPlaneError(OrchestratorError):
    """
    Raised when an external create, destroy or query call failed.

    operation names the capability call, for example domain.create.
    """

    def __init__(
        self,
        message: str,
        operation: str = "",
        resource: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message, stage=stage, resource=resource)
        self.operation = operation


@dataclass(frozen=True)
class ConsistencyWarning:
    """
    Non fatal drift signal.

    Examples
    an interface declared but not cabled
    a disk file without an owning domain
    """

    stage: str
    resource: str
    message: str

    def __str__(self) -> str:
        return f"[{self.stage}] {self.resource}: {self.message}"


@dataclass(frozen=True)
class ResourceFailure:
    """A ControlPlaneError flattened for reports."""

    stage: str
    resource: str
    message: str

    @classmethod
    def from_error(cls, err: OrchestratorError, stage: str, resource: str) -> "ResourceFailure":
        return cls(stage=err.stage or stage, resource=err.resource or resource, message=err.message)

    def __str__(self) -> str:
        return f"[{self.stage}] {self.resource}: {self.message}"
