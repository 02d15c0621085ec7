"""Command-line entry point for inbox-session."""

from __future__ import annotations

import argparse
import asyncio
import webbrowser
from datetime import datetime
from pathlib import Path

from inbox_session.core import AppSettings, build_container, configure_logging, load_app_settings
from inbox_session.core.container import MAIL_SERVICE
from inbox_session.core.models import Account, FolderNode, SearchFilters
from inbox_session.session import MailService

_COMMANDS = (
    "info",
    "test-connection",
    "folders",
    "fetch",
    "search",
    "oauth-login",
    "oauth-refresh",
)


def _parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Mail server session toolkit")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=_COMMANDS,
        help="Operation to execute.",
    )
    parser.add_argument("--folder", default="INBOX", help="Folder to operate on (default: INBOX).")
    parser.add_argument("--start", type=int, default=0, help="First display index to fetch.")
    parser.add_argument("--end", type=int, default=20, help="Display index to stop before.")
    parser.add_argument("--query", default=None, help="Free text search query.")
    parser.add_argument("--from", dest="sender", default=None, help="Sender filter for search.")
    parser.add_argument("--subject", default=None, help="Subject filter for search.")
    parser.add_argument("--since", type=_parse_date, default=None, help="Search from this date.")
    parser.add_argument("--before", type=_parse_date, default=None, help="Search before this date.")
    parser.add_argument("--login-hint", default=None, help="Account hint for the OAuth login page.")
    parser.add_argument(
        "--refresh-token",
        default=None,
        help="Refresh token to use; defaults to the configured account's token.",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    if args.command == "info":
        _print_info(settings)
        return 0
    return asyncio.run(_run_async(args, settings))


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _print_info(settings: AppSettings) -> None:
    account = settings.account
    print("inbox-session is ready.")
    if account is None:
        print("No account configured. Set INBOX_SESSION_ACCOUNT__EMAIL and friends.")
    else:
        print(f"Account: {account.email} ({account.auth_type.value})")
        print(f"IMAP host: {account.imap_host}:{account.imap_port}")
        print(f"SMTP host: {account.smtp_host or '-'}:{account.smtp_port}")
    print(f"OAuth provider: {settings.oauth.provider}")
    print(f"OAuth redirect URI: {settings.oauth.redirect_uri}")


async def _run_async(args: argparse.Namespace, settings: AppSettings) -> int:
    container = build_container(settings)
    service: MailService = container.resolve(MAIL_SERVICE)
    try:
        if args.command in ("oauth-login", "oauth-refresh"):
            return await _run_oauth(args, settings, service)
        account = settings.account
        if account is None:
            print("No account configured.")
            return 2
        return await _run_mailbox(args, account, service)
    finally:
        await service.shutdown()


async def _run_mailbox(args: argparse.Namespace, account: Account, service: MailService) -> int:
    command = args.command
    if command == "test-connection":
        result = await service.test_connection(account)
        print("Connection OK." if result.ok else f"Connection failed: {result.error}")
        return 0 if result.ok else 1

    if command == "folders":
        folders = await service.list_folders(account)
        if not folders.ok:
            print(f"Listing folders failed: {folders.error}")
            return 1
        _print_folders(folders.data or [])
        return 0

    if command == "fetch":
        page = await service.fetch_range(account, args.folder, args.start, args.end)
        if not page.ok or page.data is None:
            print(f"Fetch failed: {page.error}")
            return 1
        data = page.data
        print(f"{args.folder}: {data.total} message(s), showing [{data.start_index}, {data.end_index})")
        for email in data.emails:
            sent = email.date.isoformat(timespec="minutes") if email.date else "-"
            print(f"{email.display_index:>5}  {email.uid:>8}  {sent:<20}  {email.sender.address:<30}  {email.subject}")
        return 0

    filters = SearchFilters(
        sender=args.sender, since=args.since, before=args.before, subject=args.subject
    )
    found = await service.search(account, args.folder, args.query, filters)
    if not found.ok or found.data is None:
        print(f"Search failed: {found.error}")
        return 1
    print(f"{found.data.total} match(es), showing {len(found.data.emails)}")
    for email in found.data.emails:
        print(f"{email.uid:>8}  {email.sender.address:<30}  {email.subject}")
    return 0


async def _run_oauth(args: argparse.Namespace, settings: AppSettings, service: MailService) -> int:
    if args.command == "oauth-refresh":
        token = args.refresh_token or (settings.account.oauth2_refresh_token if settings.account else None)
        if not token:
            print("No refresh token available.")
            return 2
        refreshed = await service.refresh_token(token)
        if not refreshed.ok or refreshed.data is None:
            print(f"Refresh failed: {refreshed.error}")
            return 1
        _print_tokens(refreshed.data.access_token, refreshed.data.refresh_token, refreshed.data.expires_at)
        return 0

    begun = await service.begin_authorization(args.login_hint)
    if not begun.ok or begun.data is None:
        print(f"Authorization failed: {begun.error}")
        return 1
    print("Open this URL to sign in:")
    print(begun.data.auth_url)
    if not args.no_browser:
        webbrowser.open(begun.data.auth_url)
    exchanged = await service.exchange_code(begun.data.state)
    if not exchanged.ok or exchanged.data is None:
        print(f"Authorization failed: {exchanged.error}")
        return 1
    _print_tokens(exchanged.data.access_token, exchanged.data.refresh_token, exchanged.data.expires_at)
    return 0


def _print_tokens(access_token: str, refresh_token: str | None, expires_at: datetime) -> None:
    print(f"Access token: {access_token[:10]}... (expires {expires_at.isoformat(timespec='seconds')})")
    print(f"Refresh token: {refresh_token or '-'}")


def _print_folders(nodes: list[FolderNode], depth: int = 0) -> None:
    for node in nodes:
        marker = f"  [{node.special_use}]" if node.special_use else ""
        print(f"{'  ' * depth}{node.name}{marker}")
        _print_folders(node.children, depth + 1)


if __name__ == "__main__":
    main()
