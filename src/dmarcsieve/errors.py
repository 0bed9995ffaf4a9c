"""Exception taxonomy for the processing pipeline.

Only ConfigurationError and TransportError abort a whole run. The others are
caught by the stage that owns the offending item, logged, and processing moves
on to the next message, attachment or report.
"""

from __future__ import annotations


class DmarcSieveError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(DmarcSieveError):
    """Required credentials or endpoints are missing."""


class TransportError(DmarcSieveError):
    """Mailbox or external API could not be reached."""


class ParseError(DmarcSieveError):
    """A document or attachment is malformed."""


class AssessmentValidationError(DmarcSieveError):
    """The reasoning service returned a response that fails schema checks."""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


class NotificationError(DmarcSieveError):
    """The send API rejected or failed to deliver an alert."""

    def __init__(self, message: str, status_code: int | None = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
