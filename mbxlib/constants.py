"""
Constants for the Exchange Online mailbox report.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Export Schema
# =============================================================================

# Column order of the exported CSV (one row per mailbox)
EXPORT_COLUMNS = [
    'UserPrincipalName',
    'DisplayName',
    'Type',
    'IsLicensed',
    'Licenses',
    'HiddenFromGAL',
    'StorageConsumed',
    'StorageLimit',
    'ArchiveStatus',
    'AutoExpandingArchiveEnabled',
    'ArchiveStorageConsumed',
    'ArchiveStorageQuota',
    'RetentionPolicy',
    'ForwardingSMTPAddress',
    'ForwardingAddress',
]

LICENSE_SEPARATOR = ", "

# Written to ArchiveStorageConsumed when the archive is not active
ARCHIVE_INACTIVE_SENTINEL = ""

ARCHIVE_STATUS_ACTIVE = "Active"

# =============================================================================
# Mailbox Categories
# =============================================================================

CATEGORY_SHARED = "Shared"
CATEGORY_USER = "User"
CATEGORY_ALL = "All"

# Exchange RecipientTypeDetails -> category tag
RECIPIENT_TYPE_TO_CATEGORY = {
    'SharedMailbox': CATEGORY_SHARED,
    'UserMailbox': CATEGORY_USER,
}

CATEGORY_TO_RECIPIENT_TYPE = {
    CATEGORY_SHARED: 'SharedMailbox',
    CATEGORY_USER: 'UserMailbox',
}

# =============================================================================
# Filter Modes
# =============================================================================

FILTER_ALL_MAILBOXES = "AllMailboxes"
FILTER_LICENSED_ONLY = "LicensedOnly"

# =============================================================================
# Microsoft Endpoints and Scopes
# =============================================================================

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
EXCHANGE_SCOPE = "https://outlook.office365.com/.default"
EXCHANGE_ADMIN_API_BASE = "https://outlook.office365.com/adminapi/beta"

# Properties requested from Get-EXOMailbox
MAILBOX_PROPERTIES = [
    'UserPrincipalName',
    'DisplayName',
    'RecipientTypeDetails',
    'HiddenFromAddressListsEnabled',
    'ArchiveStatus',
    'AutoExpandingArchiveEnabled',
    'ProhibitSendReceiveQuota',
    'ArchiveQuota',
    'RetentionPolicy',
    'ForwardingSmtpAddress',
    'ForwardingAddress',
]

# M365/Graph error codes that indicate auth/permission issues
M365_AUTH_ERROR_CODES = {'Authorization_RequestDenied', 'InvalidAuthenticationToken'}

# HTTP status codes that indicate auth/permission issues
HTTP_AUTH_STATUS_CODES = {401, 403}

# HTTP status codes worth retrying
HTTP_RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_OUTPUT_DIR = "./mailbox_reports"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_AFTER = 5  # seconds, when the server sends no usable Retry-After
DEFAULT_REQUEST_TIMEOUT = 60  # seconds
DEFAULT_MAX_PAGES = 10000

EXPORT_FILENAME_PREFIX = "MailboxReport"
EXPORT_TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"
