#!/usr/bin/env python3
"""
Exchange Online Mailbox Report
Exports mailboxes with license, storage, archive and forwarding details to CSV.

Requirements:
- Entra ID App Registration with following API permissions (Application type):
  - Microsoft Graph: User.Read.All, Organization.Read.All
  - Office 365 Exchange Online: Exchange.ManageAsApp
- A directory role on the app that can read recipients (e.g. Global Reader)

Usage:
    # Set environment variables (client secret MUST be env var for security)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"

    # Run and answer the prompts
    python mailbox_report.py

    # Skip the prompts
    python mailbox_report.py --mailbox-type Shared --licensed-only
    python mailbox_report.py --mailbox-type All --all-mailboxes
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from rich.console import Console

# Check for required packages
try:
    from mbxlib.providers import (
        ExchangeAccountSource,
        ExchangeAdminClient,
        ExchangeUsageLookup,
        GraphIdentityLookup,
        TenantSession,
    )
except ImportError as e:
    print(f"ERROR: Required packages not found ({e}).")
    print("")
    print("Please install the required packages manually:")
    print("    pip install msgraph-sdk azure-identity requests")
    print("")
    print("Or install this project:")
    print("    python -m pip install -e .")
    sys.exit(1)

from mbxlib.config import (
    ReportConfig,
    build_report_config,
    generate_sample_config,
    load_config,
)
from mbxlib.errors import PipelineAborted, SessionUnavailable, SinkWriteFailed
from mbxlib.export import CsvExportSink, build_export_path
from mbxlib.models import FilterMode, MailboxCategory
from mbxlib.pipeline import PipelineDriver, RecordJoiner, RunResult
from mbxlib.utils import ProgressTracker, mask_tenant_id, setup_logging

logger = logging.getLogger(__name__)


# =============================================================================
# Interactive Prompts
# =============================================================================

CATEGORY_CHOICES = {
    '1': MailboxCategory.SHARED,
    '2': MailboxCategory.USER,
    '3': MailboxCategory.ALL,
    'shared': MailboxCategory.SHARED,
    'user': MailboxCategory.USER,
    'all': MailboxCategory.ALL,
}

FILTER_CHOICES = {
    '1': FilterMode.ALL_MAILBOXES,
    '2': FilterMode.LICENSED_ONLY,
    'all': FilterMode.ALL_MAILBOXES,
    'licensed': FilterMode.LICENSED_ONLY,
}


def _choose(console: Console, prompt: str, choices: dict, hint: str):
    """Ask until a valid choice is entered. Returns None if the operator quits."""
    while True:
        try:
            choice = console.input(f"[cyan]{prompt}[/cyan]").strip().lower()
        except (KeyboardInterrupt, EOFError):
            console.print()
            return None
        if choice in ('q', 'quit', 'exit'):
            return None
        if choice in choices:
            return choices[choice]
        console.print(f"[yellow]Invalid choice. {hint}[/yellow]")


def prompt_mailbox_category(console: Console) -> Optional[MailboxCategory]:
    """Ask which mailboxes to export."""
    console.print("\n[bold]Select the mailboxes to report on:[/bold]\n")
    console.print("  [green]1[/green]) Shared mailboxes")
    console.print("  [green]2[/green]) User mailboxes")
    console.print("  [green]3[/green]) All mailboxes")
    console.print("  [red]q[/red]) Quit\n")
    return _choose(console, "Enter choice (1-3): ", CATEGORY_CHOICES, "Please enter 1-3.")


def prompt_filter_mode(console: Console) -> Optional[FilterMode]:
    """Ask whether to keep unlicensed mailboxes."""
    console.print("\n[bold]Select the license filter:[/bold]\n")
    console.print("  [green]1[/green]) All mailboxes")
    console.print("  [green]2[/green]) Licensed mailboxes only")
    console.print("  [red]q[/red]) Quit\n")
    return _choose(console, "Enter choice (1-2): ", FILTER_CHOICES, "Please enter 1 or 2.")


# =============================================================================
# Run
# =============================================================================

def create_session(config: ReportConfig) -> TenantSession:
    """Build the tenant session from a certificate or a client secret."""
    assert config.tenant_id and config.client_id
    if config.cert_path:
        return TenantSession.from_certificate(
            config.tenant_id, config.client_id, os.path.expanduser(config.cert_path),
            organization=config.organization,
        )
    assert config.client_secret
    return TenantSession.from_client_secret(
        config.tenant_id, config.client_id, config.client_secret,
        organization=config.organization,
    )


def run_report(
    config: ReportConfig,
    session: TenantSession,
    category: MailboxCategory,
    filter_mode: FilterMode,
    show_progress: bool = True,
) -> int:
    """Export one report. Returns the process exit code."""
    console = config.console
    exchange = ExchangeAdminClient(session)
    identity_lookup = GraphIdentityLookup(session.graph_client)
    joiner = RecordJoiner(identity_lookup, ExchangeUsageLookup(exchange))
    sink = CsvExportSink(build_export_path(config.output_dir))

    result: Optional[RunResult] = None
    aborted: Optional[PipelineAborted] = None
    try:
        with ProgressTracker("Mailbox Report", console=console, show_progress=show_progress) as tracker, \
                sink:
            driver = PipelineDriver(
                ExchangeAccountSource(exchange),
                joiner,
                sink,
                filter_mode=filter_mode,
                on_progress=tracker.advance,
            )
            try:
                driver.run(category)
            except PipelineAborted as e:
                aborted = e
            except KeyboardInterrupt:
                console.print(
                    f"\n[yellow]Partial report: {sink.rows_written} rows were written to {sink.path}[/yellow]"
                )
                raise
            result = driver.result
            tracker.set_result(result.written, result.skipped, result.filtered)
    except SinkWriteFailed as e:
        console.print(f"[red]ERROR: {e}[/red]")
        return 1
    finally:
        identity_lookup.close()

    assert result is not None
    if result.failed_accounts:
        console.print(f"[yellow]Skipped {len(result.failed_accounts)} mailboxes (see log):[/yellow]")
        for account_id in result.failed_accounts:
            console.print(f"  - {account_id}")

    if aborted is not None:
        console.print(f"[red]ERROR: {aborted.reason}[/red]")
        console.print(
            f"The report was stopped early. {aborted.rows_written} rows were written to {sink.path}"
        )
        return 1

    if result.written == 0:
        console.print("No mailboxes matched. Check the selection and app permissions.")
    console.print(f"Report saved: {sink.path}")
    return 0


# =============================================================================
# Main Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Exchange Online Mailbox Report',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Using environment variables (client secret MUST be env var)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"
    python mailbox_report.py

    # Certificate authentication
    python mailbox_report.py --cert-path ~/.mailbox-report/app-cert.pem

    # Pre-answer the prompts
    python mailbox_report.py --mailbox-type User --licensed-only
    python mailbox_report.py --mailbox-type All --all-mailboxes

Required App Permissions (Application type):
    - Microsoft Graph: User.Read.All, Organization.Read.All
    - Office 365 Exchange Online: Exchange.ManageAsApp

Security Note:
    Client secrets must be provided via MS365_CLIENT_SECRET environment
    variable to avoid exposing secrets in shell history or process listings.
        """
    )

    parser.add_argument('--tenant-id',
                        help='Entra ID tenant ID (or set MS365_TENANT_ID env var)')
    parser.add_argument('--client-id',
                        help='Application (client) ID (or set MS365_CLIENT_ID env var)')
    # Client secret is env-var only for security (no CLI arg to avoid shell history exposure)
    parser.add_argument('--cert-path',
                        help='PEM certificate for app authentication (instead of a client secret)')
    parser.add_argument('--organization',
                        help='Primary tenant domain, e.g. contoso.onmicrosoft.com')
    parser.add_argument('--output-dir', '-o',
                        help='Output directory (default: ./mailbox_reports)')
    parser.add_argument('--mailbox-type', choices=[c.value for c in MailboxCategory],
                        help='Mailboxes to report on (prompted if omitted)')
    license_filter = parser.add_mutually_exclusive_group()
    license_filter.add_argument('--licensed-only', dest='licensed_only', action='store_const', const=True,
                                help='Export only licensed mailboxes (prompted if neither flag is given)')
    license_filter.add_argument('--all-mailboxes', dest='licensed_only', action='store_const', const=False,
                                help='Export licensed and unlicensed mailboxes')
    parser.add_argument('--config',
                        help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Print a sample config file and exit')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')
    parser.add_argument('--no-progress', action='store_true',
                        help='Disable the progress display')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        return 0

    setup_logging(args.log_level or ('DEBUG' if args.verbose else 'INFO'))

    try:
        config = build_report_config(load_config(args))
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    missing = config.missing_credentials()
    if missing:
        print("ERROR: Missing credentials. Please provide:")
        for item in missing:
            print(f"  {item}")
        print("\nNote: Client secret must be set via environment variable,")
        print("      not CLI argument, to avoid exposing secrets in shell history.")
        print("\nRun with --help for more information.")
        return 1

    os.makedirs(config.output_dir, exist_ok=True)
    setup_logging(config.log_level, config.output_dir)

    console = config.console
    console.print(f"Tenant: {mask_tenant_id(config.tenant_id or '')}")
    console.print(f"Output: {config.output_dir}")

    category = config.category or prompt_mailbox_category(console)
    if category is None:
        return 0
    filter_mode = config.filter_mode or prompt_filter_mode(console)
    if filter_mode is None:
        return 0

    try:
        logger.info("Connecting to Microsoft Graph and Exchange Online...")
        session = create_session(config)
        if not session.ensure_session_active():
            console.print("[red]ERROR: Could not authenticate. Check the app credentials and permissions.[/red]")
            return 1
        return run_report(config, session, category, filter_mode, show_progress=not args.no_progress)
    except SessionUnavailable as e:
        console.print(f"[red]ERROR: {e}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        return 130


if __name__ == '__main__':
    sys.exit(main())
