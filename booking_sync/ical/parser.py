"""Minimal iCalendar (RFC 5545) reader for platform availability feeds.

Only VEVENT blocks and the properties needed to build external bookings are
read. Export feeds from booking platforms are frequently non-conformant, so
the reader never raises: blocks that cannot be turned into an event are
counted and dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import re

_logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_FOLD_CHARS = (" ", "\t")
_FOLD_LIMIT_OCTETS = 75
_TEXT_ESCAPES = {"n": "\n", "N": "\n", ",": ",", ";": ";", "\\": "\\"}


class ICalProperty(str, Enum):
    """VEVENT properties consumed by the sync pipeline."""

    UID = "UID"
    SUMMARY = "SUMMARY"
    DTSTART = "DTSTART"
    DTEND = "DTEND"
    DESCRIPTION = "DESCRIPTION"

    @classmethod
    def from_name(cls, name: str) -> "ICalProperty | None":
        """Map a property name to a member; unknown names map to ``None``."""
        try:
            return cls(name.strip().upper())
        except ValueError:
            return None


@dataclass(frozen=True)
class RawEvent:
    uid: str
    summary: str
    dtstart: str
    dtend: str
    description: str | None = None


@dataclass
class ParseReport:
    events: list[RawEvent] = field(default_factory=list)
    dropped_blocks: int = 0


def fold_line(line: str, *, limit: int = _FOLD_LIMIT_OCTETS) -> str:
    """Fold a logical line into CRLF-separated physical lines of ``limit`` octets."""
    chunks: list[str] = []
    current = ""
    current_octets = 0
    for char in line:
        budget = limit if not chunks else limit - 1
        char_octets = len(char.encode("utf-8"))
        if current and current_octets + char_octets > budget:
            chunks.append(current)
            current = ""
            current_octets = 0
        current += char
        current_octets += char_octets
    chunks.append(current)
    return "\r\n ".join(chunks)


def unfold_lines(text: str) -> list[str]:
    """Split ``text`` on CRLF or LF and join continuation lines.

    A physical line starting with a space or tab continues the previous
    logical line; only that single fold character is removed.
    """
    logical: list[str] = []
    for physical in _LINE_SPLIT_RE.split(text):
        if physical[:1] in _FOLD_CHARS and logical:
            logical[-1] += physical[1:]
            continue
        logical.append(physical)
    return logical


def split_property(line: str) -> tuple[str, str] | None:
    """Split ``NAME;PARAM=X:value`` into ``("NAME", "value")``.

    Only the first colon separates the name from the value, so values that
    contain colons (URLs, times) are kept intact.
    """
    name_part, sep, value = line.partition(":")
    if not sep:
        return None
    name = name_part.split(";", 1)[0].strip()
    if not name:
        return None
    return name, value


def unescape_text(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        following = next(chars, "")
        out.append(_TEXT_ESCAPES.get(following, "\\" + following))
    return "".join(out)


def _marker(line: str) -> tuple[str, str] | None:
    parts = split_property(line.strip())
    if parts is None:
        return None
    name, value = parts
    name = name.upper()
    if name not in {"BEGIN", "END"}:
        return None
    return name, value.strip().upper()


def _build_event(fields: dict[ICalProperty, str]) -> RawEvent | None:
    uid = fields.get(ICalProperty.UID, "").strip()
    summary = fields.get(ICalProperty.SUMMARY)
    dtstart = fields.get(ICalProperty.DTSTART, "").strip()
    dtend = fields.get(ICalProperty.DTEND, "").strip()
    if not uid or summary is None or not dtstart or not dtend:
        return None
    description = fields.get(ICalProperty.DESCRIPTION)
    return RawEvent(
        uid=uid,
        summary=unescape_text(summary.strip()),
        dtstart=dtstart,
        dtend=dtend,
        description=unescape_text(description.strip()) if description is not None else None,
    )


def parse_ical_feed(raw_text: str) -> ParseReport:
    report = ParseReport()
    fields: dict[ICalProperty, str] | None = None
    nested_depth = 0

    for line in unfold_lines(raw_text or ""):
        marker = _marker(line)
        if marker is not None:
            kind, component = marker
            if kind == "BEGIN" and component == "VEVENT":
                if fields is not None:
                    report.dropped_blocks += 1
                fields = {}
                nested_depth = 0
            elif fields is None:
                continue
            elif kind == "BEGIN":
                nested_depth += 1
            elif component == "VEVENT":
                event = _build_event(fields)
                if event is None:
                    report.dropped_blocks += 1
                else:
                    report.events.append(event)
                fields = None
            elif nested_depth > 0:
                nested_depth -= 1
            continue

        if fields is None or nested_depth > 0:
            continue
        parts = split_property(line)
        if parts is None:
            continue
        name, value = parts
        prop = ICalProperty.from_name(name)
        if prop is None:
            continue
        fields[prop] = value

    if fields is not None:
        report.dropped_blocks += 1

    if report.dropped_blocks:
        _logger.info(
            "ical feed parsed events=%d dropped_blocks=%d",
            len(report.events),
            report.dropped_blocks,
        )
    return report


def parse_ical(raw_text: str) -> list[RawEvent]:
    return parse_ical_feed(raw_text).events


__all__ = [
    "ICalProperty",
    "ParseReport",
    "RawEvent",
    "fold_line",
    "parse_ical",
    "parse_ical_feed",
    "split_property",
    "unescape_text",
    "unfold_lines",
]
