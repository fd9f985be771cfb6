"""Error taxonomy for the scan-to-print pipeline."""

from __future__ import annotations


class LabelPipelineError(Exception):
    """Base class for recoverable pipeline errors."""


class MalformedIdentifier(LabelPipelineError, ValueError):
    """Raised when a raw device identifier cannot be normalized."""

    def __init__(self, raw_id: str, segment: str) -> None:
        super().__init__(f"Malformed identifier {raw_id!r}: segment {segment!r} is not a decimal number")
        self.raw_id = raw_id
        self.segment = segment


class RenderFailure(LabelPipelineError):
    """Raised when a label PDF could not be produced."""


class PrintSubmissionFailure(LabelPipelineError):
    """Raised when the printing subsystem rejects a label."""


class DiscoveryTimeout(LabelPipelineError):
    """Raised when discovery does not finish within its budget."""


class StoreIOFailure(LabelPipelineError):
    """Raised when the record store cannot flush pending mutations."""
