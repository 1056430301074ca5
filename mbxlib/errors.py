"""
Exceptions raised by the mailbox report pipeline.

Run-level failures (SessionUnavailable, SinkWriteFailed) stop the export.
AccountLookupFailed is scoped to one mailbox; the driver logs it and moves on.
"""
from typing import Optional


class MailboxReportError(Exception):
    """Base class for mailbox report errors."""


class SessionUnavailable(MailboxReportError):
    """The Graph or Exchange Online session is gone (expired, revoked, denied)."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class AccountLookupFailed(MailboxReportError):
    """An identity or usage lookup failed or found nothing for one account."""

    def __init__(self, account_id: str, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Lookup failed for {account_id}: {reason}")


class SinkWriteFailed(MailboxReportError):
    """A row could not be written to the export file."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to write {path}: {reason}")


class PipelineAborted(MailboxReportError):
    """The export stopped early; the file holds the rows written so far."""

    def __init__(self, reason: str, rows_written: int, cause: Optional[Exception] = None):
        self.reason = reason
        self.rows_written = rows_written
        self.cause = cause
        super().__init__(f"Export aborted after {rows_written} rows: {reason}")
