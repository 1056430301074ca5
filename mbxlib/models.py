"""
Data models for the mailbox report pipeline.
"""
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from .constants import (
    ARCHIVE_STATUS_ACTIVE,
    CATEGORY_ALL,
    CATEGORY_SHARED,
    CATEGORY_TO_RECIPIENT_TYPE,
    CATEGORY_USER,
    EXPORT_COLUMNS,
    FILTER_ALL_MAILBOXES,
    FILTER_LICENSED_ONLY,
)


class MailboxCategory(str, Enum):
    """Which mailboxes to enumerate."""
    SHARED = CATEGORY_SHARED
    USER = CATEGORY_USER
    ALL = CATEGORY_ALL

    @property
    def recipient_type(self) -> Optional[str]:
        """Exchange RecipientTypeDetails value for this category (None = no filter)."""
        return CATEGORY_TO_RECIPIENT_TYPE.get(self.value)

    def admits(self, category_tag: str) -> bool:
        """Check whether a descriptor's category tag belongs to this category."""
        if self is MailboxCategory.ALL:
            return True
        return category_tag == self.value


class FilterMode(str, Enum):
    """License filter applied before export."""
    ALL_MAILBOXES = FILTER_ALL_MAILBOXES
    LICENSED_ONLY = FILTER_LICENSED_ONLY


@dataclass(frozen=True)
class AccountDescriptor:
    """
    One mailbox as listed by Exchange Online.
    """
    user_principal_name: str
    display_name: Optional[str] = None
    category: str = CATEGORY_USER  # "Shared", "User" or the raw recipient type
    hidden_from_gal: bool = False
    archive_status: Optional[str] = None  # "Active", "None", ...
    auto_expanding_archive_enabled: bool = False
    storage_limit: Optional[str] = None  # ProhibitSendReceiveQuota
    archive_quota: Optional[str] = None
    retention_policy: Optional[str] = None
    forwarding_smtp_address: Optional[str] = None
    forwarding_address: Optional[str] = None

    @property
    def archive_active(self) -> bool:
        return self.archive_status == ARCHIVE_STATUS_ACTIVE


@dataclass(frozen=True)
class IdentityRecord:
    """License assignment for one account, from Microsoft Graph."""
    is_licensed: bool
    # None when the directory returned no license collection at all
    licenses: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class UsageRecord:
    """Storage consumption of a primary or archive mailbox."""
    total_item_size: Optional[str]


@dataclass(frozen=True)
class NormalizedRecord:
    """
    Flattened, fixed-schema representation of one mailbox.

    Created once per exported account and never mutated.
    """
    user_principal_name: str
    display_name: Optional[str]
    type: str
    is_licensed: bool
    licenses: Optional[str]
    hidden_from_gal: bool
    storage_consumed: Optional[str]
    storage_limit: Optional[str]
    archive_status: Optional[str]
    auto_expanding_archive_enabled: bool
    archive_storage_consumed: Optional[str]
    archive_storage_quota: Optional[str]
    retention_policy: Optional[str]
    forwarding_smtp_address: Optional[str]
    forwarding_address: Optional[str]

    def to_row(self) -> Dict[str, object]:
        """Return the record keyed by export column, in column order."""
        values = (
            self.user_principal_name,
            self.display_name,
            self.type,
            self.is_licensed,
            self.licenses,
            self.hidden_from_gal,
            self.storage_consumed,
            self.storage_limit,
            self.archive_status,
            self.auto_expanding_archive_enabled,
            self.archive_storage_consumed,
            self.archive_storage_quota,
            self.retention_policy,
            self.forwarding_smtp_address,
            self.forwarding_address,
        )
        return OrderedDict(zip(EXPORT_COLUMNS, values))
