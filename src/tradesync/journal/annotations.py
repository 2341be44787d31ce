"""Composition of the user annotation that travels with a closed trade.

When a position finishes its evaluation lifecycle its opening metadata
(and, if given, the closing evaluation) is copied onto the trade's journal
side tables.  This module builds that payload; persisting it is the
materializer's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from tradesync.core.models import ClosingEvaluation, IncomingPosition


@dataclass(frozen=True)
class ScreenshotLink:
    name: str
    kind: str
    screenshot_id: str


@dataclass
class MetadataTransfer:
    """Everything written to the side tables for one trade."""

    trade_id: str
    day: int
    note: str
    opening: dict[str, Any]
    closing: dict[str, Any]
    trading_metadata: dict[str, Any]
    tags: list[str] = field(default_factory=list)
    satisfaction: int | None = None
    screenshots: list[ScreenshotLink] = field(default_factory=list)


def compose_note_html(playbook: str, note: str) -> str:
    """Playbook HTML followed by ``<p>note</p>``; ``<p>-</p>`` if both empty."""
    text = ""
    if playbook and playbook.strip():
        text += playbook
    if note and note.strip():
        text += f"<p>{note}</p>"
    if not text.strip():
        text = "<p>-</p>"
    return text


def merge_tags(*groups: Iterable[str]) -> list[str]:
    """Concatenate tag groups, de-duplicated, first occurrence wins."""
    seen: dict[str, None] = {}
    for group in groups:
        for tag in group or ():
            if tag and tag not in seen:
                seen[tag] = None
    return list(seen)


def screenshot_name(day: int, symbol: str, kind: str) -> str:
    return f"{day}_{symbol}_{kind}"


def build_transfer(
    incoming: IncomingPosition,
    *,
    trade_id: str,
    day: int,
    symbol: str,
    evaluation: ClosingEvaluation | None = None,
) -> MetadataTransfer:
    """Assemble the side-table payload for a finished position.

    Without an *evaluation* (popups disabled, evaluation skipped, or a
    history import) only the opening metadata is carried over.
    """
    ev = evaluation or ClosingEvaluation()

    opening = {
        "entry_stress_level": incoming.stress_level,
        "emotion_level": incoming.emotion_level,
        "entry_note": incoming.entry_note,
        "feelings": incoming.feelings,
        "playbook": incoming.playbook,
        "timeframe": incoming.entry_timeframe,
        "trade_type": incoming.trade_type,
        "screenshot_id": incoming.entry_screenshot_id,
    }
    closing = {
        "closing_note": ev.closing_note or incoming.closing_note,
        "closing_stress_level": ev.closing_stress_level,
        "closing_emotion_level": ev.closing_emotion_level,
        "closing_feelings": ev.closing_feelings,
        "closing_timeframe": ev.closing_timeframe,
        "closing_playbook": ev.closing_playbook,
        "closing_trade_type": ev.closing_trade_type,
        "closing_screenshot_id": ev.closing_screenshot_id,
        "strategy_followed": ev.strategy_followed,
    }

    satisfaction = ev.satisfaction
    if satisfaction is None:
        satisfaction = incoming.satisfaction

    screenshots: list[ScreenshotLink] = []
    for kind, screenshot_id in (
        ("entry", incoming.entry_screenshot_id),
        ("trend", incoming.trend_screenshot_id),
        ("closing", ev.closing_screenshot_id),
    ):
        if screenshot_id:
            screenshots.append(
                ScreenshotLink(
                    name=screenshot_name(day, symbol, kind),
                    kind=kind,
                    screenshot_id=screenshot_id,
                )
            )

    return MetadataTransfer(
        trade_id=trade_id,
        day=day,
        note=compose_note_html(incoming.playbook, ev.note),
        opening=opening,
        closing=closing,
        trading_metadata=dict(incoming.trading_metadata),
        tags=merge_tags(incoming.tags, ev.tags, ev.closing_tags),
        satisfaction=satisfaction,
        screenshots=screenshots,
    )
