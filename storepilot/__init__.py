"""StorePilot: grounded query orchestration for commerce assistants."""

from .pipeline import PipelineExhaustedError, PipelineResponse, QueryPipeline

__version__ = "0.1.0"

__all__ = ["PipelineExhaustedError", "PipelineResponse", "QueryPipeline", "__version__"]
