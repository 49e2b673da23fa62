"""Error taxonomy shared by the lead email pipeline and its storage adapters."""

from enum import Enum


class ErrorKind(Enum):
    """Machine-readable failure categories.

    Branching in the pipeline is done on these values, never on message text.
    """

    INVALID_INPUT = "invalid_input"
    CONFIGURATION = "configuration"
    UNSAFE_URL = "unsafe_url"
    UNSUPPORTED_TYPE = "unsupported_type"
    FETCH_FAILED = "fetch_failed"
    EMPTY = "empty"
    TOO_LARGE = "too_large"
    OVER_BUDGET = "over_budget"
    STORE_UNAVAILABLE = "store_unavailable"
    TRANSCRIPT_UNAVAILABLE = "transcript_unavailable"
    SUMMARY_UNAVAILABLE = "summary_unavailable"
    SUMMARY_INVALID = "summary_invalid"
    SCHEDULER_FAILED = "scheduler_failed"
    TRANSPORT_FAILED = "transport_failed"


class LeadEmailError(Exception):
    """Base exception for lead email failures."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, kind: "ErrorKind" = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConfigurationError(LeadEmailError):
    """Raised when required environment configuration is missing."""

    kind = ErrorKind.CONFIGURATION


class InvalidRequestError(LeadEmailError):
    """Raised for malformed trigger payloads. Never leased, never retried."""

    kind = ErrorKind.INVALID_INPUT


class TranscriptError(LeadEmailError):
    """Raised when the conversation API cannot produce a transcript."""

    kind = ErrorKind.TRANSCRIPT_UNAVAILABLE


class SummaryError(LeadEmailError):
    """Raised when the summarizer cannot produce a summary.

    ``SUMMARY_INVALID`` marks unusable model output, which fails closed.
    ``SUMMARY_UNAVAILABLE`` marks a failed model call.
    """

    kind = ErrorKind.SUMMARY_INVALID


class LeaseStoreError(LeadEmailError):
    """Raised when the dedupe store is unreachable or rejects a write for a reason
    other than a failed condition."""

    kind = ErrorKind.STORE_UNAVAILABLE


class SchedulerError(LeadEmailError):
    """Raised when a retry schedule cannot be created, updated, or deleted."""

    kind = ErrorKind.SCHEDULER_FAILED


class DeliveryError(LeadEmailError):
    """Raised when the email transport rejects the message."""

    kind = ErrorKind.TRANSPORT_FAILED
