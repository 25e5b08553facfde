# =============================================================================
# IMAP / SMTP Wire Format Tests
# =============================================================================

from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from kestrel_tui.core import ComposeDraft, ComposeKind, MessageFlags
from kestrel_tui.remote.imap import (
    build_message,
    compress_uids,
    decode_header,
    expand_uids,
    extract_body,
    format_cursor,
    inline_literals,
    parse_cursor,
    parse_fetch_item,
    parse_flags,
    tokenize,
)
from kestrel_tui.remote.smtp import build_mime_message

FETCH_LINE = (
    '1 FETCH (UID 42 X-GM-MSGID 1789 X-GM-THRID 1700 FLAGS (\\Seen \\Flagged) '
    'ENVELOPE ("Mon, 15 Jan 2024 10:30:00 +0000" "=?utf-8?q?Caf=C3=A9?=" '
    '(("Alice" NIL "alice" "example.com")) (("Alice" NIL "alice" "example.com")) '
    '(("Alice" NIL "alice" "example.com")) ((NIL NIL "me" "gmail.com")) '
    '((NIL NIL "carol" "example.com")) NIL "<prev@example.com>" "<abc@example.com>"))'
)


class TestUidSets:
    def test_compress(self):
        assert compress_uids({1, 2, 3, 7, 9, 10}) == "1-3,7,9-10"
        assert compress_uids(set()) == ""

    def test_expand(self):
        assert expand_uids("1-3,7,9-10") == {1, 2, 3, 7, 9, 10}
        assert expand_uids("") == set()

    def test_expand_rejects_garbage(self):
        with pytest.raises(ValueError):
            expand_uids("1-x")

    def test_cursor(self):
        cursor = format_cursor(7, {1, 2, 3, 5})
        assert cursor == "7:1-3,5"
        assert parse_cursor(cursor) == (7, {1, 2, 3, 5})

    @pytest.mark.parametrize("cursor", [None, "", "garbage", "x:1-3", "7:1-y"])
    def test_unreadable_cursor(self, cursor):
        assert parse_cursor(cursor) is None

    def test_cursor_of_empty_folder(self):
        assert parse_cursor("7:") == (7, set())


class TestResponseParsing:
    def test_tokenize_keeps_nested_lists_and_quotes(self):
        assert tokenize('UID 1 FLAGS (\\Seen) X "a (b) c"') == ["UID", "1", "FLAGS", "(\\Seen)", "X", '"a (b) c"']

    def test_parse_flags(self):
        assert parse_flags("(\\Seen \\Flagged)") == MessageFlags.SEEN | MessageFlags.FLAGGED
        assert parse_flags("()") == MessageFlags.NONE

    def test_decode_header(self):
        assert decode_header("=?utf-8?q?Caf=C3=A9?=") == "Café"
        assert decode_header("plain") == "plain"
        assert decode_header("") == ""

    def test_parse_fetch_item(self):
        data = parse_fetch_item(FETCH_LINE)
        assert data["uid"] == 42
        assert data["gm_msgid"] == "1789"
        assert data["gm_thrid"] == "1700"
        assert data["flags"] == MessageFlags.SEEN | MessageFlags.FLAGGED
        envelope = data["envelope"]
        assert envelope["subject"] == "Café"
        assert envelope["from"] == [("Alice", "alice@example.com")]
        assert envelope["to"] == [("", "me@gmail.com")]
        assert envelope["message_id"] == "<abc@example.com>"

    def test_build_message(self):
        message = build_message(parse_fetch_item(FETCH_LINE), "INBOX")
        assert message.id == "1789"
        assert message.thread_id == "1700"
        assert message.folder_id == "INBOX"
        assert message.uid == 42
        assert message.sender == "alice@example.com"
        assert message.sender_name == "Alice"
        assert message.recipients == ["me@gmail.com"]
        assert message.cc == ["carol@example.com"]
        assert message.in_reply_to == "<prev@example.com>"
        assert message.references == ["<prev@example.com>"]
        assert message.date_sent == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert message.is_read
        assert message.is_flagged

    def test_missing_subject(self):
        data = parse_fetch_item('2 FETCH (UID 3 X-GM-MSGID 5 ENVELOPE (NIL NIL NIL NIL NIL NIL NIL NIL NIL NIL))')
        message = build_message(data, "INBOX")
        assert message.subject == "(No Subject)"
        assert message.date_sent is None

    def test_inline_literals(self):
        lines = [
            b"1 FETCH (UID 5 X-GM-MSGID 9 ENVELOPE (NIL {12}",
            b'Say "hi" now',
            b" NIL NIL NIL NIL NIL NIL NIL NIL))",
            b"2 FETCH (UID 6 X-GM-MSGID 10 FLAGS (\\Seen))",
            b"Success",
        ]
        joined = inline_literals(lines)
        assert len(joined) == 2
        assert parse_fetch_item(joined[0])["envelope"]["subject"] == 'Say "hi" now'
        assert parse_fetch_item(joined[1])["uid"] == 6


class TestBodies:
    def test_plain_text(self):
        msg = MIMEText("Hello there\nSecond line", "plain", "utf-8")
        assert extract_body(msg.as_bytes()) == "Hello there\nSecond line"

    def test_html_is_preferred_and_converted(self):
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText("plain version", "plain"))
        msg.attach(MIMEText("<html><body><p>Hello <b>World</b></p></body></html>", "html"))
        body = extract_body(msg.as_bytes())
        assert "Hello World" in body
        assert "plain version" not in body
        assert "<b>" not in body

    def test_attachments_are_skipped(self):
        msg = MIMEMultipart("mixed")
        msg.attach(MIMEText("the body", "plain"))
        attachment = MIMEText("not the body", "plain")
        attachment.add_header("Content-Disposition", "attachment", filename="notes.txt")
        msg.attach(attachment)
        assert extract_body(msg.as_bytes()) == "the body"


class TestMimeMessage:
    def test_reply_headers(self, account):
        draft = ComposeDraft(
            kind=ComposeKind.REPLY_ALL,
            to="alice@example.com",
            cc="carol@example.com; dave@example.com",
            subject="Re: Lunch",
            body=["Sounds good", "", "> original"],
            in_reply_to="<m2@example.com>",
            references=["<m1@example.com>", "<m2@example.com>"],
        )
        msg = build_mime_message(account, draft)

        assert msg["From"] == "Me <me@gmail.com>"
        assert msg["To"] == "alice@example.com"
        assert msg["Cc"] == "carol@example.com, dave@example.com"
        assert msg["Subject"] == "Re: Lunch"
        assert msg["In-Reply-To"] == "<m2@example.com>"
        assert msg["References"] == "<m1@example.com> <m2@example.com>"
        assert msg["Message-ID"].endswith("@gmail.com>")
        assert msg.get_payload(decode=True).decode("utf-8") == "Sounds good\n\n> original"

    def test_new_message_has_no_threading_headers(self, account):
        msg = build_mime_message(account, ComposeDraft(to="bob@example.com", body=["hi"]))
        assert msg["In-Reply-To"] is None
        assert msg["References"] is None
        assert msg["Cc"] is None
