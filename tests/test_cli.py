"""Tests for the command-line entry point."""

from __future__ import annotations

from datetime import datetime

import pytest

from inbox_session.cli import build_parser, execute
from inbox_session.core.config import AppSettings
from inbox_session.core.models import Account


def test_parser_defaults() -> None:
    args = build_parser().parse_args([])
    assert args.command == "info"
    assert args.folder == "INBOX"
    assert (args.start, args.end) == (0, 20)
    assert not args.no_browser


def test_parser_reads_search_filters() -> None:
    args = build_parser().parse_args(
        ["search", "--query", "invoice", "--from", "bob@example.com", "--since", "2024-02-01"]
    )
    assert args.sender == "bob@example.com"
    assert args.since == datetime(2024, 2, 1)
    assert args.before is None


def test_parser_rejects_bad_dates() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["search", "--since", "yesterday"])


def test_info_prints_configuration(capsys: pytest.CaptureFixture[str]) -> None:
    settings = AppSettings(
        account=Account(email="user@example.com", imap_host="imap.example.com", password="x")
    )
    code = execute(build_parser().parse_args(["info"]), settings)

    output = capsys.readouterr().out
    assert code == 0
    assert "Account: user@example.com (password)" in output
    assert "IMAP host: imap.example.com:993" in output
    assert "OAuth redirect URI: http://localhost:19876/callback" in output


def test_mailbox_commands_need_an_account(capsys: pytest.CaptureFixture[str]) -> None:
    code = execute(build_parser().parse_args(["folders"]), AppSettings())
    assert code == 2
    assert "No account configured." in capsys.readouterr().out


def test_refresh_without_token(capsys: pytest.CaptureFixture[str]) -> None:
    code = execute(build_parser().parse_args(["oauth-refresh"]), AppSettings())
    assert code == 2
    assert "No refresh token available." in capsys.readouterr().out
