"""Exception types raised by the analysis pipeline."""

from __future__ import annotations


class HurdlesError(Exception):
    """Base class for pipeline errors."""


class EngineError(HurdlesError):
    """The engine did not produce a usable result for a request."""


class EngineUnavailableError(EngineError):
    """The engine process could not be started or has exited."""


class EngineTimeoutError(EngineError):
    """A single engine round-trip exceeded its allotted time."""


class AnalysisInProgressError(HurdlesError):
    """A run was started while another one is still running."""
