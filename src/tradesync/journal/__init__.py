"""Journal layer: day-ledger math and the annotation payload of a trade."""

from tradesync.journal.annotations import (
    MetadataTransfer,
    ScreenshotLink,
    build_transfer,
    compose_note_html,
    merge_tags,
    screenshot_name,
)
from tradesync.journal.ledger import (
    build_trade,
    merge_trade,
    new_ledger,
    recompute,
    recompute_blotter,
    recompute_pnl,
)

__all__ = [
    # Ledger
    "build_trade",
    "merge_trade",
    "new_ledger",
    "recompute",
    "recompute_blotter",
    "recompute_pnl",
    # Annotations
    "MetadataTransfer",
    "ScreenshotLink",
    "build_transfer",
    "compose_note_html",
    "merge_tags",
    "screenshot_name",
]
