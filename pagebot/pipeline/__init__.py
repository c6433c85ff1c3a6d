"""Three-stage reply pipeline."""

from .stages import (
    ConfigurationMissingError,
    IngestOutcome,
    PermanentJobError,
    Pipeline,
    RetryPolicy,
    TransientDeliveryError,
)
from .startup import PipelineHandles, build_pipeline, recover_in_flight, start_pipeline
from .workers import StageWorker, WorkerPool

__all__ = [
    "ConfigurationMissingError",
    "IngestOutcome",
    "PermanentJobError",
    "Pipeline",
    "PipelineHandles",
    "RetryPolicy",
    "StageWorker",
    "TransientDeliveryError",
    "WorkerPool",
    "build_pipeline",
    "recover_in_flight",
    "start_pipeline",
]
