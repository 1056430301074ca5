"""
Tests for the join / filter / stream pipeline.

Covers:
- build_record field mapping, license rendering and the archive sentinel
- RecordJoiner lookups and per-account failure handling
- license_filter_admits
- PipelineDriver state machine, progress reporting and error policy
- End-to-end scenarios writing a real CSV file
"""
import csv
import os
import sys
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mbxlib.constants import EXPORT_COLUMNS
from mbxlib.errors import (
    AccountLookupFailed,
    PipelineAborted,
    SessionUnavailable,
    SinkWriteFailed,
)
from mbxlib.export import CsvExportSink
from mbxlib.models import (
    AccountDescriptor,
    FilterMode,
    IdentityRecord,
    MailboxCategory,
    UsageRecord,
)
from mbxlib.pipeline import (
    DriverState,
    PipelineDriver,
    RecordJoiner,
    build_record,
    format_licenses,
    license_filter_admits,
)


# =============================================================================
# Helper Functions
# =============================================================================

def create_descriptor(
    upn: str,
    category: str = "User",
    archive_status: str = "None",
    display_name: str = None,
    **kwargs,
) -> AccountDescriptor:
    """Create an AccountDescriptor with sensible defaults."""
    return AccountDescriptor(
        user_principal_name=upn,
        display_name=display_name or upn.split("@")[0].title(),
        category=category,
        archive_status=archive_status,
        storage_limit=kwargs.pop("storage_limit", "100 GB (107,374,182,400 bytes)"),
        archive_quota=kwargs.pop("archive_quota", "100 GB (107,374,182,400 bytes)"),
        retention_policy=kwargs.pop("retention_policy", "Default MRM Policy"),
        **kwargs,
    )


class FakeAccountSource:
    """In-memory account source that honours the category like Exchange does."""

    def __init__(self, descriptors):
        self.descriptors = list(descriptors)
        self.yielded = 0

    def list_accounts(self, category):
        for descriptor in self.descriptors:
            if category.admits(descriptor.category):
                self.yielded += 1
                yield descriptor


class FakeIdentityLookup:
    """Identity lookup backed by a dict; values may be exceptions to raise."""

    def __init__(self, records=None, default=None):
        self.records = records or {}
        self.default = default
        self.calls = []

    def get_identity(self, account_id):
        self.calls.append(account_id)
        value = self.records.get(account_id, self.default)
        if isinstance(value, Exception):
            raise value
        return value


class FakeUsageLookup:
    """Usage lookup returning a size derived from the account id."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    def get_usage(self, account_id, archive=False):
        self.calls.append((account_id, archive))
        failure = self.failures.get((account_id, archive))
        if isinstance(failure, Exception):
            raise failure
        if failure == "missing":
            return None
        prefix = "archive" if archive else "primary"
        return UsageRecord(total_item_size=f"{prefix}-size-of-{account_id}")


class ListSink:
    """Sink collecting records in memory."""

    def __init__(self):
        self.records = []

    def append(self, record):
        self.records.append(record)


LICENSED = IdentityRecord(is_licensed=True, licenses=("ENTERPRISEPACK",))
UNLICENSED = IdentityRecord(is_licensed=False, licenses=())


def read_csv(path):
    with open(path, newline='', encoding='utf-8') as f:
        return list(csv.DictReader(f))


# =============================================================================
# build_record Tests
# =============================================================================

class TestBuildRecord:
    """Tests for build_record field mapping."""

    def test_maps_all_fields(self):
        """Test every descriptor and identity field lands in the record."""
        descriptor = create_descriptor(
            "alice@contoso.com",
            display_name="Alice Smith",
            category="User",
            archive_status="Active",
            hidden_from_gal=True,
            auto_expanding_archive_enabled=True,
            forwarding_smtp_address="smtp:alice@fabrikam.com",
            forwarding_address="Bob Jones",
        )
        identity = IdentityRecord(is_licensed=True, licenses=("SPE_E3", "POWER_BI_PRO"))

        record = build_record(
            descriptor,
            identity,
            UsageRecord("1.5 GB (1,610,612,736 bytes)"),
            UsageRecord("300 MB (314,572,800 bytes)"),
        )

        assert record.user_principal_name == "alice@contoso.com"
        assert record.display_name == "Alice Smith"
        assert record.type == "User"
        assert record.is_licensed is True
        assert record.licenses == "SPE_E3, POWER_BI_PRO"
        assert record.hidden_from_gal is True
        assert record.storage_consumed == "1.5 GB (1,610,612,736 bytes)"
        assert record.storage_limit == "100 GB (107,374,182,400 bytes)"
        assert record.archive_status == "Active"
        assert record.auto_expanding_archive_enabled is True
        assert record.archive_storage_consumed == "300 MB (314,572,800 bytes)"
        assert record.archive_storage_quota == "100 GB (107,374,182,400 bytes)"
        assert record.retention_policy == "Default MRM Policy"
        assert record.forwarding_smtp_address == "smtp:alice@fabrikam.com"
        assert record.forwarding_address == "Bob Jones"

    def test_row_has_fifteen_columns_in_order(self):
        """Test to_row returns the export columns in order."""
        record = build_record(create_descriptor("a@contoso.com"), LICENSED, UsageRecord("1 GB"))
        row = record.to_row()

        assert list(row.keys()) == EXPORT_COLUMNS
        assert len(row) == 15

    def test_inactive_archive_uses_empty_sentinel(self):
        """Test ArchiveStorageConsumed is '' (not None) when the archive is not active."""
        for status in ("None", "NotActive", None, "active"):
            descriptor = create_descriptor("a@contoso.com", archive_status=status)
            record = build_record(descriptor, LICENSED, UsageRecord("1 GB"))

            assert record.archive_storage_consumed == ""
            assert record.archive_storage_consumed is not None
            assert "ArchiveStorageConsumed" in record.to_row()

    def test_inactive_archive_ignores_archive_usage(self):
        """Test archive usage is ignored when the descriptor says the archive is off."""
        descriptor = create_descriptor("a@contoso.com", archive_status="None")
        record = build_record(descriptor, LICENSED, UsageRecord("1 GB"), UsageRecord("5 GB"))

        assert record.archive_storage_consumed == ""

    def test_idempotent(self):
        """Test identical inputs produce equal records."""
        descriptor = create_descriptor("a@contoso.com", archive_status="Active")
        usage = UsageRecord("1 GB")
        archive = UsageRecord("2 GB")

        first = build_record(descriptor, LICENSED, usage, archive)
        second = build_record(descriptor, LICENSED, usage, archive)

        assert first == second
        assert first.to_row() == second.to_row()


class TestFormatLicenses:
    """Tests for license rendering."""

    def test_absent_is_none(self):
        assert format_licenses(None) is None

    def test_empty_is_empty_string(self):
        assert format_licenses(()) == ""

    def test_single(self):
        assert format_licenses(("SPE_E3",)) == "SPE_E3"

    def test_preserves_order_without_trailing_separator(self):
        result = format_licenses(("POWER_BI_PRO", "ENTERPRISEPACK", "EMS_E3"))
        assert result == "POWER_BI_PRO, ENTERPRISEPACK, EMS_E3"
        assert not result.endswith(", ")


# =============================================================================
# RecordJoiner Tests
# =============================================================================

class TestRecordJoiner:
    """Tests for RecordJoiner lookups."""

    def test_join_without_archive(self):
        """Test an inactive archive triggers only the primary usage lookup."""
        identity = FakeIdentityLookup(default=LICENSED)
        usage = FakeUsageLookup()
        joiner = RecordJoiner(identity, usage)

        fetched, record = joiner.join(create_descriptor("a@contoso.com"))

        assert fetched is LICENSED
        assert identity.calls == ["a@contoso.com"]
        assert usage.calls == [("a@contoso.com", False)]
        assert record.storage_consumed == "primary-size-of-a@contoso.com"
        assert record.archive_storage_consumed == ""

    def test_join_with_active_archive(self):
        """Test an active archive triggers the archive usage lookup."""
        usage = FakeUsageLookup()
        joiner = RecordJoiner(FakeIdentityLookup(default=LICENSED), usage)

        _, record = joiner.join(create_descriptor("a@contoso.com", archive_status="Active"))

        assert usage.calls == [("a@contoso.com", False), ("a@contoso.com", True)]
        assert record.archive_storage_consumed == "archive-size-of-a@contoso.com"

    def test_identity_not_found(self):
        """Test a missing identity raises AccountLookupFailed tagged with the account."""
        joiner = RecordJoiner(FakeIdentityLookup(default=None), FakeUsageLookup())

        with pytest.raises(AccountLookupFailed) as excinfo:
            joiner.join(create_descriptor("ghost@contoso.com"))

        assert excinfo.value.account_id == "ghost@contoso.com"
        assert "identity" in excinfo.value.reason

    def test_usage_error(self):
        """Test a usage lookup exception becomes AccountLookupFailed."""
        usage = FakeUsageLookup(failures={("a@contoso.com", False): ConnectionError("reset")})
        joiner = RecordJoiner(FakeIdentityLookup(default=LICENSED), usage)

        with pytest.raises(AccountLookupFailed) as excinfo:
            joiner.join(create_descriptor("a@contoso.com"))

        assert excinfo.value.account_id == "a@contoso.com"
        assert "reset" in str(excinfo.value)

    def test_archive_usage_missing(self):
        """Test a missing archive statistics record fails the account."""
        usage = FakeUsageLookup(failures={("a@contoso.com", True): "missing"})
        joiner = RecordJoiner(FakeIdentityLookup(default=LICENSED), usage)

        with pytest.raises(AccountLookupFailed) as excinfo:
            joiner.join(create_descriptor("a@contoso.com", archive_status="Active"))

        assert "archive statistics not found" in excinfo.value.reason

    def test_session_unavailable_propagates(self):
        """Test SessionUnavailable is not turned into a per-account failure."""
        joiner = RecordJoiner(
            FakeIdentityLookup(default=SessionUnavailable("token revoked")),
            FakeUsageLookup(),
        )

        with pytest.raises(SessionUnavailable):
            joiner.join(create_descriptor("a@contoso.com"))

    def test_auth_error_becomes_session_unavailable(self):
        """Test a Graph auth error from a lookup ends the session."""
        class ODataError(Exception):
            response_status_code = 401
            error = None

        joiner = RecordJoiner(
            FakeIdentityLookup(default=ODataError("Unauthorized")),
            FakeUsageLookup(),
        )

        with pytest.raises(SessionUnavailable):
            joiner.join(create_descriptor("a@contoso.com"))


# =============================================================================
# License Filter Tests
# =============================================================================

class TestLicenseFilter:
    """Tests for license_filter_admits."""

    def test_all_mailboxes_admits_unlicensed(self):
        descriptor = create_descriptor("a@contoso.com")
        assert license_filter_admits(FilterMode.ALL_MAILBOXES, descriptor, UNLICENSED) is True

    def test_licensed_only_admits_licensed(self):
        descriptor = create_descriptor("a@contoso.com")
        assert license_filter_admits(FilterMode.LICENSED_ONLY, descriptor, LICENSED) is True

    def test_licensed_only_rejects_unlicensed(self):
        descriptor = create_descriptor("a@contoso.com")
        assert license_filter_admits(FilterMode.LICENSED_ONLY, descriptor, UNLICENSED) is False


# =============================================================================
# PipelineDriver Tests
# =============================================================================

class TestPipelineDriver:
    """Tests for PipelineDriver."""

    def _driver(self, descriptors, identities=None, usage=None, sink=None,
                filter_mode=FilterMode.ALL_MAILBOXES, on_progress=None):
        identity_lookup = FakeIdentityLookup(identities, default=LICENSED)
        usage_lookup = usage or FakeUsageLookup()
        driver = PipelineDriver(
            FakeAccountSource(descriptors),
            RecordJoiner(identity_lookup, usage_lookup),
            sink if sink is not None else ListSink(),
            filter_mode=filter_mode,
            on_progress=on_progress,
        )
        return driver, identity_lookup

    def test_initial_state_idle(self):
        driver, _ = self._driver([])
        assert driver.state is DriverState.IDLE

    def test_completed_on_exhaustion(self):
        """Test normal exhaustion ends in COMPLETED with every account written."""
        sink = ListSink()
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(3)]
        driver, _ = self._driver(descriptors, sink=sink)

        result = driver.run(MailboxCategory.ALL)

        assert driver.state is DriverState.COMPLETED
        assert result.state is DriverState.COMPLETED
        assert result.processed == 3
        assert result.written == 3
        assert [r.user_principal_name for r in sink.records] == [
            "user0@contoso.com", "user1@contoso.com", "user2@contoso.com"
        ]

    def test_empty_source(self):
        driver, _ = self._driver([])
        result = driver.run(MailboxCategory.SHARED)
        assert result.state is DriverState.COMPLETED
        assert result.processed == 0
        assert result.written == 0

    def test_cannot_run_twice(self):
        driver, _ = self._driver([])
        driver.run(MailboxCategory.ALL)
        with pytest.raises(RuntimeError):
            driver.run(MailboxCategory.ALL)

    def test_identity_fetched_once_per_account(self):
        """Test the filter reuses the joiner's identity instead of a second lookup."""
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(4)]
        driver, identity_lookup = self._driver(
            descriptors,
            identities={"user1@contoso.com": UNLICENSED},
            filter_mode=FilterMode.LICENSED_ONLY,
        )

        driver.run(MailboxCategory.ALL)

        assert identity_lookup.calls == [d.user_principal_name for d in descriptors]

    def test_progress_reported_for_every_account(self):
        """Test progress fires after each element whatever its outcome."""
        progress = Mock()
        descriptors = [
            create_descriptor("ok@contoso.com"),
            create_descriptor("broken@contoso.com"),
            create_descriptor("unlicensed@contoso.com"),
        ]
        driver, _ = self._driver(
            descriptors,
            identities={
                "broken@contoso.com": None,
                "unlicensed@contoso.com": UNLICENSED,
            },
            filter_mode=FilterMode.LICENSED_ONLY,
            on_progress=progress,
        )

        result = driver.run(MailboxCategory.ALL)

        assert [c.args for c in progress.call_args_list] == [
            (1, "ok@contoso.com"),
            (2, "broken@contoso.com"),
            (3, "unlicensed@contoso.com"),
        ]
        assert result.written == 1
        assert result.skipped == 1
        assert result.filtered == 1
        assert result.failed_accounts == ["broken@contoso.com"]

    def test_licensed_only_output(self):
        """Test LicensedOnly exports only licensed mailboxes."""
        sink = ListSink()
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(6)]
        identities = {d.user_principal_name: UNLICENSED for d in descriptors[::2]}
        driver, _ = self._driver(
            descriptors, identities=identities, sink=sink, filter_mode=FilterMode.LICENSED_ONLY
        )

        driver.run(MailboxCategory.ALL)

        assert len(sink.records) == 3
        assert all(r.is_licensed for r in sink.records)

    def test_all_mailboxes_is_superset_of_licensed_only(self):
        """Test AllMailboxes output contains every LicensedOnly account."""
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(5)]
        identities = {"user0@contoso.com": UNLICENSED, "user3@contoso.com": UNLICENSED}

        licensed_sink, all_sink = ListSink(), ListSink()
        self._driver(descriptors, identities=identities, sink=licensed_sink,
                     filter_mode=FilterMode.LICENSED_ONLY)[0].run(MailboxCategory.ALL)
        self._driver(descriptors, identities=identities, sink=all_sink,
                     filter_mode=FilterMode.ALL_MAILBOXES)[0].run(MailboxCategory.ALL)

        licensed_ids = {r.user_principal_name for r in licensed_sink.records}
        all_ids = {r.user_principal_name for r in all_sink.records}
        assert licensed_ids < all_ids
        assert len(all_ids) == 5

    def test_row_count_matches_successful_admitted_accounts(self):
        """Test rows = accounts whose lookups succeeded and passed the filter."""
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(8)]
        identities = {
            "user1@contoso.com": None,  # not found
            "user2@contoso.com": UNLICENSED,  # filtered
            "user5@contoso.com": UNLICENSED,  # filtered
        }
        usage = FakeUsageLookup(failures={("user6@contoso.com", False): TimeoutError("slow")})
        sink = ListSink()
        driver, _ = self._driver(descriptors, identities=identities, usage=usage, sink=sink,
                                 filter_mode=FilterMode.LICENSED_ONLY)

        result = driver.run(MailboxCategory.ALL)

        assert len(sink.records) == 8 - 2 - 2
        assert result.written == len(sink.records)
        assert result.processed == 8

    def test_session_loss_aborts(self):
        """Test SessionUnavailable moves the driver to ABORTED and re-raises."""
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(3)]
        driver, _ = self._driver(
            descriptors, identities={"user1@contoso.com": SessionUnavailable("expired")}
        )

        with pytest.raises(PipelineAborted) as excinfo:
            driver.run(MailboxCategory.ALL)

        assert driver.state is DriverState.ABORTED
        assert driver.result.state is DriverState.ABORTED
        assert excinfo.value.rows_written == 1
        assert isinstance(excinfo.value.cause, SessionUnavailable)

    def test_sink_failure_aborts(self):
        """Test SinkWriteFailed moves the driver to ABORTED."""
        sink = Mock()
        sink.append.side_effect = [None, SinkWriteFailed("report.csv", "disk full")]
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(3)]
        driver, _ = self._driver(descriptors, sink=sink)

        with pytest.raises(PipelineAborted) as excinfo:
            driver.run(MailboxCategory.ALL)

        assert driver.state is DriverState.ABORTED
        assert excinfo.value.rows_written == 1
        assert "disk full" in excinfo.value.reason

    def test_unexpected_source_error_aborts(self):
        """Test an unexpected error from the listing still ends in ABORTED."""
        class BrokenAccountSource:
            def list_accounts(self, category):
                yield create_descriptor("alice@contoso.com")
                raise ValueError("Invalid Retry-After header")

        sink = ListSink()
        driver = PipelineDriver(
            BrokenAccountSource(),
            RecordJoiner(FakeIdentityLookup(default=LICENSED), FakeUsageLookup()),
            sink,
        )

        with pytest.raises(PipelineAborted) as excinfo:
            driver.run(MailboxCategory.ALL)

        assert driver.state is DriverState.ABORTED
        assert driver.result.state is DriverState.ABORTED
        assert excinfo.value.rows_written == 1
        assert isinstance(excinfo.value.cause, ValueError)
        assert "ValueError" in excinfo.value.reason
        assert len(sink.records) == 1

    def test_interrupt_aborts_and_reraises(self):
        """Test Ctrl+C ends in ABORTED and is not wrapped."""
        sink = Mock()
        sink.append.side_effect = [None, KeyboardInterrupt()]
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(3)]
        driver, _ = self._driver(descriptors, sink=sink)

        with pytest.raises(KeyboardInterrupt):
            driver.run(MailboxCategory.ALL)

        assert driver.state is DriverState.ABORTED
        assert driver.result.written == 1

    def test_progress_reported_when_sink_fails(self):
        """Test the element whose write fails still gets its progress report."""
        progress = Mock()
        sink = Mock()
        sink.append.side_effect = [None, SinkWriteFailed("report.csv", "disk full")]
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(3)]
        driver, _ = self._driver(descriptors, sink=sink, on_progress=progress)

        with pytest.raises(PipelineAborted):
            driver.run(MailboxCategory.ALL)

        assert [c.args for c in progress.call_args_list] == [
            (1, "user0@contoso.com"),
            (2, "user1@contoso.com"),
        ]
        assert driver.result.processed == 2

    def test_progress_reported_when_session_lost(self):
        progress = Mock()
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(3)]
        driver, _ = self._driver(
            descriptors,
            identities={"user1@contoso.com": SessionUnavailable("expired")},
            on_progress=progress,
        )

        with pytest.raises(PipelineAborted):
            driver.run(MailboxCategory.ALL)

        assert [c.args for c in progress.call_args_list] == [
            (1, "user0@contoso.com"),
            (2, "user1@contoso.com"),
        ]

    def test_stream_is_lazy(self):
        """Test the driver does not pull the next account before the current one is consumed."""
        source = FakeAccountSource([create_descriptor(f"user{i}@contoso.com") for i in range(5)])
        driver = PipelineDriver(
            source,
            RecordJoiner(FakeIdentityLookup(default=LICENSED), FakeUsageLookup()),
            ListSink(),
        )

        stream = driver.stream(MailboxCategory.ALL)
        next(stream)

        assert source.yielded == 1


# =============================================================================
# End-to-end Scenarios (real CSV file)
# =============================================================================

class TestScenarios:
    """Pipeline scenarios writing through CsvExportSink."""

    def test_category_filter_shared(self, tmp_path):
        """Scenario A: Shared category yields only the two shared mailboxes."""
        descriptors = [
            create_descriptor("info@contoso.com", category="Shared"),
            create_descriptor("alice@contoso.com", category="User"),
            create_descriptor("sales@contoso.com", category="Shared"),
        ]
        path = str(tmp_path / "report.csv")

        with CsvExportSink(path) as sink:
            driver = PipelineDriver(
                FakeAccountSource(descriptors),
                RecordJoiner(FakeIdentityLookup(default=UNLICENSED), FakeUsageLookup()),
                sink,
                filter_mode=FilterMode.ALL_MAILBOXES,
            )
            driver.run(MailboxCategory.SHARED)

        rows = read_csv(path)
        assert len(rows) == 2
        assert all(row["Type"] == "Shared" for row in rows)
        assert [row["UserPrincipalName"] for row in rows] == ["info@contoso.com", "sales@contoso.com"]

    def test_empty_vs_absent_licenses(self):
        """Scenario B: empty SKU list renders '', absent renders None."""
        identities = {
            "empty@contoso.com": IdentityRecord(is_licensed=False, licenses=()),
            "absent@contoso.com": IdentityRecord(is_licensed=False, licenses=None),
        }
        sink = ListSink()
        driver = PipelineDriver(
            FakeAccountSource([
                create_descriptor("empty@contoso.com"),
                create_descriptor("absent@contoso.com"),
            ]),
            RecordJoiner(FakeIdentityLookup(identities), FakeUsageLookup()),
            sink,
        )

        driver.run(MailboxCategory.ALL)

        assert sink.records[0].licenses == ""
        assert sink.records[1].licenses is None

    def test_usage_failure_skips_one_account(self, tmp_path, caplog):
        """Scenario C: a failed usage lookup skips that account and logs it."""
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(4)]
        usage = FakeUsageLookup(failures={("user2@contoso.com", False): RuntimeError("502 Bad Gateway")})
        path = str(tmp_path / "report.csv")

        with caplog.at_level("WARNING"):
            with CsvExportSink(path) as sink:
                driver = PipelineDriver(
                    FakeAccountSource(descriptors),
                    RecordJoiner(FakeIdentityLookup(default=LICENSED), usage),
                    sink,
                )
                result = driver.run(MailboxCategory.ALL)

        rows = read_csv(path)
        assert [row["UserPrincipalName"] for row in rows] == [
            "user0@contoso.com", "user1@contoso.com", "user3@contoso.com"
        ]
        assert result.state is DriverState.COMPLETED
        assert result.failed_accounts == ["user2@contoso.com"]
        assert "user2@contoso.com" in caplog.text

    def test_session_lost_midway(self, tmp_path):
        """Scenario D: session lost after 5 of 10 leaves 5 valid rows and ABORTED."""
        descriptors = [create_descriptor(f"user{i}@contoso.com") for i in range(10)]
        identities = {"user5@contoso.com": SessionUnavailable("refresh token revoked")}
        path = str(tmp_path / "report.csv")

        with pytest.raises(PipelineAborted) as excinfo:
            with CsvExportSink(path) as sink:
                driver = PipelineDriver(
                    FakeAccountSource(descriptors),
                    RecordJoiner(FakeIdentityLookup(identities, default=LICENSED), FakeUsageLookup()),
                    sink,
                )
                driver.run(MailboxCategory.ALL)

        assert driver.state is DriverState.ABORTED
        assert excinfo.value.rows_written == 5

        rows = read_csv(path)
        assert len(rows) == 5
        assert all(list(row.keys()) == EXPORT_COLUMNS for row in rows)
        assert rows[-1]["UserPrincipalName"] == "user4@contoso.com"

    def test_archive_sentinel_in_file(self, tmp_path):
        """Test the inactive-archive sentinel is an empty cell in the CSV."""
        descriptors = [
            create_descriptor("active@contoso.com", archive_status="Active"),
            create_descriptor("off@contoso.com", archive_status="None"),
        ]
        path = str(tmp_path / "report.csv")

        with CsvExportSink(path) as sink:
            PipelineDriver(
                FakeAccountSource(descriptors),
                RecordJoiner(FakeIdentityLookup(default=LICENSED), FakeUsageLookup()),
                sink,
            ).run(MailboxCategory.ALL)

        rows = read_csv(path)
        assert rows[0]["ArchiveStorageConsumed"] == "archive-size-of-active@contoso.com"
        assert rows[1]["ArchiveStorageConsumed"] == ""
