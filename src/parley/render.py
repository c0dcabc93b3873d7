"""
Parley - Rich text rendering of chat entries.

Produces rich ``Text`` lines; laying them out is left to the caller.
"""

from typing import Iterable, List

from rich.text import Text

from .reconcile import ChatEntry, MessageState


def render_entry(entry: ChatEntry, viewer_id: str) -> Text:
    """Render one entry: sender, then text or a file link with image preview."""
    own = entry.sender_id == viewer_id
    name = "You" if own else (entry.sender_name or entry.sender_id)

    text = Text()
    text.append(f"{name}: ", style="bold cyan" if own else "bold green")

    if entry.is_file and entry.file is not None:
        text.append(f"📎 {entry.file.name} ({entry.file.size_kb:.1f} KB)", style="underline blue")
        if entry.file.is_image:
            text.append(f"\n  [image preview: {entry.file.url}]", style="dim")
    elif entry.decryption_failed:
        text.append(entry.text or "", style="bold red")
    else:
        text.append(entry.text or "")

    if entry.state == MessageState.PENDING:
        text.append(" (sending)", style="dim italic")
    return text


def render_transcript(entries: Iterable[ChatEntry], viewer_id: str) -> List[Text]:
    return [render_entry(entry, viewer_id) for entry in entries]
