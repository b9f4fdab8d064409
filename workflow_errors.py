"""
Error types for the RNA-seq workflow.

Every error is fatal to the stage that raises it. The ``details`` dict carries
the offending row/column/sample/coefficient/contrast so callers (CLI, app)
can report it without parsing the message.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow failures."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


class FormatError(WorkflowError):
    """Raised when an input table is malformed (headers, column counts, values)."""


class JoinError(WorkflowError):
    """Raised when count samples do not match metadata rows one-to-one."""


class ModelRankError(WorkflowError):
    """Raised when the design matrix has non-estimable coefficients."""


class NetworkError(WorkflowError):
    """Raised when a remote fetch fails after the retry budget is exhausted."""


class ThresholdConfigError(WorkflowError):
    """Raised for invalid statistical parameters (negative thresholds etc.)."""


class ConfigError(WorkflowError):
    """Raised for invalid workflow configuration (unknown keys, bad contrasts)."""
