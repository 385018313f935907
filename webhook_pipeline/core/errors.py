# core/errors.py
"""
Exception hierarchy for the ingestion pipeline.

Client-caused validation problems are not exceptions: the schema validator
returns them as data. These types cover infrastructure and workflow faults.
"""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class QueueUnavailableError(PipelineError):
    """The queue backend is unreachable or rejected the operation."""


class ConfigurationError(PipelineError):
    """Startup configuration names an unknown backend, check or policy."""


class WorkflowTimeoutError(PipelineError):
    """A workflow step did not finish within the execution deadline."""
