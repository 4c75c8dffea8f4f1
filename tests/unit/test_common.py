"""Unit tests for address helpers and text formatting in watcher/common.py."""

from pathlib import Path

import pytest

from watcher.common import (
    is_group_jid,
    looks_like_address,
    markdown_to_chat,
    mime_for,
    phone_from_jid,
    preview,
    resolve_jid,
    strip_device,
)


class TestAddresses:
    @pytest.mark.parametrize("jid,expected", [
        ("4179:3@s.whatsapp.net", "4179@s.whatsapp.net"),
        ("4179@s.whatsapp.net", "4179@s.whatsapp.net"),
        ("98765:12@lid", "98765@lid"),
    ])
    def test_strip_device(self, jid, expected):
        assert strip_device(jid) == expected

    def test_phone_from_jid(self):
        assert phone_from_jid("41790000001:3@s.whatsapp.net") == "41790000001"
        assert phone_from_jid("41790000001@s.whatsapp.net") == "41790000001"

    def test_group_detection(self):
        assert is_group_jid("12345-678@g.us")
        assert not is_group_jid("4179@s.whatsapp.net")

    @pytest.mark.parametrize("recipient,expected", [
        ("+41 76 450-2698", "41764502698@s.whatsapp.net"),
        ("(041) 76.450", "04176450@s.whatsapp.net"),
        ("41764502698@s.whatsapp.net", "41764502698@s.whatsapp.net"),
        ("123456789@g.us", "123456789@g.us"),
    ])
    def test_resolve_jid(self, recipient, expected):
        assert resolve_jid(recipient) == expected

    def test_looks_like_address(self):
        assert looks_like_address("+41 79 000 00 01")
        assert looks_like_address("x@g.us")
        assert not looks_like_address("Ann")
        assert not looks_like_address("ann 2")


class TestMarkdown:
    def test_bold_and_italic(self):
        assert markdown_to_chat("**bold** and *italic*") == "*bold* and _italic_"

    def test_inline_code(self):
        assert markdown_to_chat("run `make`") == "run ```make```"

    def test_heading(self):
        assert markdown_to_chat("## Status") == "*STATUS*"

    def test_bullets_and_checkboxes(self):
        text = "- one\n* two\n- [ ] todo\n- [x] done"
        assert markdown_to_chat(text) == "• one\n• two\n☐ todo\n☑ done"

    def test_quote_and_rule(self):
        assert markdown_to_chat("> note\n---") == "▎ note\n———"

    def test_plain_text_untouched(self):
        assert markdown_to_chat("just words") == "just words"


class TestMisc:
    def test_preview_truncates(self):
        assert preview("x" * 100, 10) == "x" * 10 + "..."
        assert preview("short") == "short"

    def test_mime_for(self):
        assert mime_for(Path("a.PNG")) == "image/png"
        assert mime_for(Path("clip.mov")) == "video/quicktime"
        assert mime_for(Path("blob.xyz")) == "application/octet-stream"
