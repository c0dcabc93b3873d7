"""
Unit tests for transcript rendering.
"""

from parley.constants import DECRYPTION_FAILED_PLACEHOLDER
from parley.message import ContentKind, FileDescriptor
from parley.reconcile import ChatEntry, MessageState
from parley.render import render_entry, render_transcript


def entry(**overrides) -> ChatEntry:
    fields = dict(
        key="m1",
        state=MessageState.CONFIRMED,
        sender_id="alice",
        sender_name="Alice",
        kind=ContentKind.TEXT,
        text="hi",
        group_id="g1",
    )
    fields.update(overrides)
    return ChatEntry(**fields)


def test_text_line():
    assert render_entry(entry(), "bob").plain == "Alice: hi"
    assert render_entry(entry(), "alice").plain == "You: hi"


def test_pending_marker():
    line = render_entry(entry(state=MessageState.PENDING), "alice")

    assert line.plain == "You: hi (sending)"


def test_file_link_and_image_preview():
    pdf = FileDescriptor("doc.pdf", "/uploads/x_doc.pdf", 2048, "application/pdf")
    png = FileDescriptor("cat.png", "/uploads/x_cat.png", 1536, "image/png")

    pdf_line = render_entry(entry(kind=ContentKind.FILE, text=None, file=pdf), "bob").plain
    png_line = render_entry(entry(kind=ContentKind.FILE, text=None, file=png), "bob").plain

    assert pdf_line == "Alice: 📎 doc.pdf (2.0 KB)"
    assert png_line.startswith("Alice: 📎 cat.png (1.5 KB)\n")
    assert "/uploads/x_cat.png" in png_line


def test_decryption_failure_rendered_inline():
    line = render_entry(
        entry(text=DECRYPTION_FAILED_PLACEHOLDER, decryption_failed=True, group_id=None, recipient_id="bob"),
        "bob",
    )

    assert line.plain == f"Alice: {DECRYPTION_FAILED_PLACEHOLDER}"


def test_transcript_keeps_order():
    lines = render_transcript([entry(text="one"), entry(key="m2", text="two")], "bob")

    assert [line.plain for line in lines] == ["Alice: one", "Alice: two"]
