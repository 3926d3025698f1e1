"""
Custom exception hierarchy for gifcomposer.

All gifcomposer errors inherit from GifComposerError so callers can catch
the entire family with a single except clause.  Cancellation is not an
error and deliberately sits outside the hierarchy.
"""

from __future__ import annotations


class GifComposerError(Exception):
    """Base exception for all gifcomposer errors."""


class ToolchainUnavailableError(GifComposerError):
    """Raised when a required external tool is not on $PATH."""

    def __init__(self, tool: str, hint: str = "") -> None:
        message = f"{tool!r} not found on $PATH."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message)
        self.tool = tool
        self.hint = hint


class SourceNotFoundError(GifComposerError):
    """Raised when a source could not be located by any lookup strategy."""

    def __init__(self, filename: str, attempted: list[str]) -> None:
        lines = [f"Source not found: {filename!r}", "Tried:"]
        lines += [f"  - {step}" for step in attempted]
        super().__init__("\n".join(lines))
        self.filename = filename
        self.attempted = list(attempted)


class StageError(GifComposerError):
    """Raised when a pipeline stage fails.

    ``stage`` names the stage and ``tool_output`` carries whatever the
    underlying tool printed (usually stderr).
    """

    stage = "pipeline"

    def __init__(self, message: str, tool_output: str = "", stage: str | None = None) -> None:
        if stage is not None:
            self.stage = stage
        super().__init__(f"[{self.stage}] {message}")
        self.tool_output = tool_output


class ConversionFailedError(StageError):
    """Raised when a clip cannot be resampled into a looping animation."""

    stage = "convert"


class ExtractionFailedError(StageError):
    """Raised when an animation cannot be decoded into frames."""

    stage = "extract"


class CompositionFailedError(StageError):
    """Raised when layering or overlaying frames fails."""

    stage = "compose"


class EncodingFailedError(StageError):
    """Raised when the final GIF cannot be written or verified."""

    stage = "encode"


class OptimizationError(StageError):
    """Raised by the size optimizer.  Always downgraded to a warning."""

    stage = "optimize"


class JobValidationError(GifComposerError):
    """Raised when a job request is malformed."""

    def __init__(self, field: str, problem: str) -> None:
        super().__init__(f"{field}: {problem}")
        self.field = field
        self.problem = problem


class CacheError(GifComposerError):
    """Raised when the content cache is corrupted or inaccessible."""


class ExportCancelled(Exception):
    """Raised when the caller's cancellation predicate returns True."""
