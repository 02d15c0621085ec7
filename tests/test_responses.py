"""Tests for IMAP response parsing helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from inbox_session.core.models import UNKNOWN_SENDER
from inbox_session.transport.responses import (
    FetchRecord,
    decode_folder_name,
    encode_folder_name,
    parse_fetch_response,
    parse_list_response,
    parse_search_response,
    quote_mailbox,
    summary_from_record,
)

HEADER_SECTION = "BODY[HEADER.FIELDS (SUBJECT FROM TO CC BCC DATE MESSAGE-ID)]"


def test_parse_list_response_handles_quoting_and_literals() -> None:
    entries = parse_list_response(
        [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasChildren \\Noselect) "/" "[Gmail]"',
            b'(\\HasNoChildren \\Sent) "/" "[Gmail]/Sent Mail"',
            (b'(\\HasNoChildren) "/" {8}', b"Projects"),
            b'(\\HasNoChildren) NIL Flat',
            b'(\\HasNoChildren) "." "INBOX.Entw&APw-rfe"',
            None,
        ]
    )

    assert [entry.path for entry in entries] == [
        "INBOX",
        "[Gmail]",
        "[Gmail]/Sent Mail",
        "Projects",
        "Flat",
        "INBOX.Entwürfe",
    ]
    assert entries[1].flags == ("\\HasChildren", "\\Noselect")
    assert entries[4].delimiter is None
    assert entries[5].delimiter == "."


def test_modified_utf7_folder_names() -> None:
    assert decode_folder_name("Entw&APw-rfe") == "Entwürfe"
    assert decode_folder_name("Tom &- Jerry") == "Tom & Jerry"
    assert encode_folder_name("Entwürfe") == "Entw&APw-rfe"
    assert encode_folder_name("Tom & Jerry") == "Tom &- Jerry"
    assert quote_mailbox('Say "hi"') == '"Say \\"hi\\""'


def test_undecodable_folder_name_keeps_raw_text() -> None:
    entries = parse_list_response(
        [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasNoChildren) "/" "Bad&AB-"',
        ]
    )

    assert [entry.path for entry in entries] == ["INBOX", "Bad&AB-"]
    assert decode_folder_name("Bad&AB-") == "Bad&AB-"


def test_parse_fetch_response_groups_chunks_per_message() -> None:
    first_headers = b"Subject: Hi\r\nFrom: Alice <alice@example.com>\r\n\r\n"
    second_headers = b"Subject: Again\r\n\r\n"
    records = parse_fetch_response(
        [
            (
                b"1 (UID 100 FLAGS (\\Seen) RFC822.SIZE 2048 " + HEADER_SECTION.encode() + b" {48}",
                first_headers,
            ),
            b")",
            (b"2 (UID 101 " + HEADER_SECTION.encode() + b" {20}", second_headers),
            b" FLAGS (\\Answered \\Flagged))",
            b'3 (UID 102 FLAGS () INTERNALDATE "05-Mar-2024 09:15:00 +0100")',
        ]
    )

    assert [record.seq for record in records] == [1, 2, 3]
    assert [record.uid for record in records] == [100, 101, 102]
    assert records[0].flags == ("\\Seen",)
    assert records[0].size == 2048
    assert records[0].literal("BODY[HEADER") == first_headers
    assert records[1].flags == ("\\Answered", "\\Flagged")
    assert records[2].literals == {}
    assert records[2].internal_date == datetime(
        2024, 3, 5, 9, 15, tzinfo=timezone(timedelta(hours=1))
    )


def test_parse_search_response_sorts_numbers() -> None:
    assert parse_search_response([b"7 3 15"]) == [3, 7, 15]
    assert parse_search_response([b""]) == []
    assert parse_search_response([None]) == []


def test_summary_from_record_decodes_headers() -> None:
    headers = (
        b"Subject: =?utf-8?q?Caf=C3=A9_menu?=\r\n"
        b"From: \"Bob B.\" <bob@example.com>\r\n"
        b"To: a@example.com, \"C\" <c@example.com>\r\n"
        b"Date: Tue, 05 Mar 2024 09:15:00 +0000\r\n"
        b"Message-ID: <m1@example.com>\r\n\r\n"
    )
    record = FetchRecord(
        seq=4,
        text=" UID 55 FLAGS (\\Seen) RFC822.SIZE 10",
        literals={HEADER_SECTION: headers},
    )
    summary = summary_from_record(record)

    assert summary is not None
    assert summary.uid == 55 and summary.seq == 4
    assert summary.subject == "Café menu"
    assert summary.sender.name == "Bob B." and summary.sender.address == "bob@example.com"
    assert [address.address for address in summary.to] == ["a@example.com", "c@example.com"]
    assert summary.date == datetime(2024, 3, 5, 9, 15, tzinfo=timezone.utc)
    assert summary.message_id == "<m1@example.com>"
    assert summary.flags == ("\\Seen",)
    assert not summary.has_attachments


def test_summary_defaults_for_sparse_headers() -> None:
    record = FetchRecord(seq=1, text=" UID 9", literals={HEADER_SECTION: b"\r\n"})
    summary = summary_from_record(record)

    assert summary is not None
    assert summary.subject == "(No Subject)"
    assert summary.sender == UNKNOWN_SENDER
    assert summary.date is None


def test_summary_requires_uid() -> None:
    assert summary_from_record(FetchRecord(seq=1, text=" FLAGS ()")) is None


def test_has_attachments_from_bodystructure() -> None:
    with_disposition = FetchRecord(
        seq=1,
        text=(
            ' UID 1 BODYSTRUCTURE (("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 10 1 NIL NIL NIL)'
            '("application" "pdf" ("name" "a.pdf") NIL NIL "base64" 400 NIL ("attachment" ("filename" "a.pdf")) NIL) "mixed")'
        ),
    )
    named_binary = FetchRecord(
        seq=2,
        text=' UID 2 BODYSTRUCTURE (("image" "png" ("name" "logo.png") NIL NIL "base64" 400) "related")',
    )
    plain = FetchRecord(
        seq=3,
        text=' UID 3 BODYSTRUCTURE ("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 10 1 NIL NIL NIL)',
    )

    assert with_disposition.has_attachments
    assert named_binary.has_attachments
    assert not plain.has_attachments
