"""Provider interface for generation task execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from photo_tasks.engine.models import TaskKind


@dataclass(slots=True)
class ProviderRequest:
    """Inputs required to execute one provider call."""

    task_id: str
    kind: TaskKind
    payload: dict[str, Any]
    timeout_seconds: float


@dataclass(slots=True)
class ProviderOutput:
    """Successful provider response."""

    result_ref: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_result(self) -> dict[str, Any]:
        return {"result_ref": self.result_ref, **self.data}


class GenerationProvider(Protocol):
    """Protocol implemented by provider adapters.

    Implementations raise `ProviderError` with a structured kind for every
    failure they can recognise.
    """

    def invoke(self, request: ProviderRequest) -> ProviderOutput:
        """Run one generation call and return its output."""
