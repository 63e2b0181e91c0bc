"""Error taxonomy for the example-generation pipeline.

Transient errors are retried by the queue, protocol errors fail a job on the
spot, and precondition errors are raised to the enqueuing caller before any
job exists (or fail a job on the spot when its input turns out unusable).
"""

class PipelineError(Exception):
    """Base class for everything raised by presetgen."""


class TransientError(PipelineError):
    """Network failure, timeout or non-2xx response. Retryable."""


class ProtocolError(PipelineError):
    """The provider answered, but in a shape we do not understand."""


class UnexpectedProviderFormat(ProtocolError):
    def __init__(self, shape: str):
        self.shape = shape
        super().__init__(f"unexpected output format from provider: {shape}")


class PreconditionError(PipelineError):
    """Bad input. Never retried."""


class PresetNotFound(PreconditionError):
    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"preset not found: {preset_id}")


class InvalidAllocationRequest(PreconditionError):
    pass


class InvalidJobPayload(PreconditionError):
    pass


class InsufficientModels(PreconditionError):
    def __init__(self, needed: int, available: dict[str, int]):
        self.needed = needed
        self.available = dict(available)
        counts = ", ".join(f"{n} {g.lower()}" for g, n in self.available.items())
        super().__init__(
            f"not enough available models: need {needed} of each gender, available: {counts}"
        )


class AllocationConflict(PreconditionError):
    """Concurrent requests kept reserving the same models."""


class UnsafeDestination(PreconditionError):
    """A sink key that would resolve outside the sink directory."""


class CatalogError(PipelineError):
    """models.json is missing or malformed."""
