"""Domain exceptions raised by the pipeline and its adapters."""


class PipelineError(Exception):
    """Base class for failures that end a job in the error state."""


class InvalidUpload(PipelineError):
    """Upload rejected before a job is created (missing or empty bytes)."""


class MaterializationError(PipelineError):
    """Audio could not be brought back to a local file for processing."""


class SegmentationError(PipelineError):
    """A segmentation strategy failed or produced no usable chunks."""


class JobCancelled(Exception):
    """Raised inside a pipeline step once cancellation has been requested.
    Not a PipelineError: cancelled jobs end as `cancelled`, never `error`."""


class JobNotReady(Exception):
    """Result requested for a job that has not completed."""


class JobNotFound(KeyError):
    """No job with the given id."""
