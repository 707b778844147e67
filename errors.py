"""
Error types shared by the report ingestion pipeline.

Caller input problems are rejected before any network call where possible;
upstream failures are surfaced at the adapter boundary.
"""


class ReportInputError(Exception):
    """The caller supplied something we can't accept (missing field, empty transcript, ...)."""

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.details = list(details or [])


class NoAudioError(ReportInputError):
    pass


class UnresolvedPostcodeError(ReportInputError):
    pass


class UpstreamServiceError(Exception):
    """A hosted service (LLM, speech-to-text) failed or returned something unusable."""
    pass


class ExtractionError(UpstreamServiceError):
    pass


class SummaryError(UpstreamServiceError):
    pass


class TranscriptionError(UpstreamServiceError):
    pass


class StoreError(Exception):
    pass


class RealtimeError(Exception):
    pass
