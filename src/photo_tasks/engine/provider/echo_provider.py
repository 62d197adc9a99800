"""Local provider stand-in that echoes the request back."""

from __future__ import annotations

from photo_tasks.engine.errors import ProviderError, ProviderErrorKind
from photo_tasks.engine.provider.base import ProviderOutput, ProviderRequest

SIMULATE_ERROR_KEY = "simulate_error"


class EchoGenerationProvider:
    """Deterministic provider for local runs and CLI smoke checks.

    A payload may carry `simulate_error` set to a `ProviderErrorKind` value
    (plus `simulate_status` for `http_status`) to force that failure.
    """

    def invoke(self, request: ProviderRequest) -> ProviderOutput:
        simulated = request.payload.get(SIMULATE_ERROR_KEY)
        if simulated:
            kind = ProviderErrorKind(str(simulated))
            status = request.payload.get("simulate_status")
            raise ProviderError(
                f"Simulated {kind.value} failure",
                kind=kind,
                status_code=int(status) if status is not None else None,
            )
        return ProviderOutput(
            result_ref=f"echo://{request.kind.value}/{request.task_id}",
            data={"kind": request.kind.value, "payload": dict(request.payload)},
        )
