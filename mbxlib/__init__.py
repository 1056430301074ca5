"""
Exchange Online mailbox report library.
"""
from . import constants
from .errors import (
    AccountLookupFailed,
    MailboxReportError,
    PipelineAborted,
    SessionUnavailable,
    SinkWriteFailed,
)
from .export import CsvExportSink, build_export_path
from .models import (
    AccountDescriptor,
    FilterMode,
    IdentityRecord,
    MailboxCategory,
    NormalizedRecord,
    UsageRecord,
)
from .pipeline import (
    DriverState,
    PipelineDriver,
    RecordJoiner,
    RunResult,
    build_record,
    license_filter_admits,
)
from .utils import ProgressTracker, setup_logging

__all__ = [
    'constants',
    # Errors
    'MailboxReportError',
    'SessionUnavailable',
    'AccountLookupFailed',
    'SinkWriteFailed',
    'PipelineAborted',
    # Models
    'AccountDescriptor',
    'IdentityRecord',
    'UsageRecord',
    'NormalizedRecord',
    'MailboxCategory',
    'FilterMode',
    # Pipeline
    'RecordJoiner',
    'PipelineDriver',
    'DriverState',
    'RunResult',
    'build_record',
    'license_filter_admits',
    # Export
    'CsvExportSink',
    'build_export_path',
    # Utils
    'ProgressTracker',
    'setup_logging',
]
