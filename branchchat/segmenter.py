"""
Response segmentation for assistant replies.

Splits one raw reply string into an ordered list of typed blocks that the
presentation layer renders independently:

* :class:`TextBlock` -- prose, with light markdown clean-up applied
* :class:`CodeBlock` -- a fenced code block, body kept verbatim
* :class:`TableBlock` -- a pipe-delimited table

The scan runs in two passes over the lines of the reply. Pass one finds
table spans across the whole input. Pass two looks for fenced code only in
the gaps between those spans, so a table always wins over a fence that
overlaps it. Whatever is left over becomes text.

Usage::

    from branchchat.segmenter import segment

    for block in segment(reply_text):
        print(block.kind, block)

:func:`segment` never raises. Malformed tables and unclosed fences degrade
to text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, NamedTuple, Union

__all__ = [
    "Block",
    "CodeBlock",
    "TableBlock",
    "TextBlock",
    "blocks_to_dicts",
    "blocks_to_text",
    "clean_text",
    "segment",
]

Cell = Union[str, int, float]

_HEADING_RE = re.compile(r"^#+[ \t]", re.MULTILINE)
_BULLET_RE = re.compile(r"^[ \t]*[-*][ \t]", re.MULTILINE)
_SEPARATOR_RE = re.compile(r"^[\s|:-]+$")
_FENCE_OPEN_RE = re.compile(r"^\s*```\s*([^\s`]*)\s*$")
_FENCE_CLOSE_RE = re.compile(r"^\s*`{3,}\s*$")

BULLET = "• "
PREVIEWABLE_LANGUAGES = frozenset({"html"})


# ---------------------------------------------------------------------------
# Block types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    """Cleaned prose."""

    kind: ClassVar[str] = "text"

    body: str
    span: tuple[int, int] = field(default=(0, 0), compare=False)


@dataclass(frozen=True)
class CodeBlock:
    """A fenced code block with an optional language tag."""

    kind: ClassVar[str] = "code"

    language: str | None
    body: str
    span: tuple[int, int] = field(default=(0, 0), compare=False)

    @property
    def display_language(self) -> str:
        return self.language or "code"

    @property
    def previewable(self) -> bool:
        """True when the block can be shown as a live preview (HTML)."""
        return (self.language or "").lower() in PREVIEWABLE_LANGUAGES


@dataclass(frozen=True)
class TableBlock:
    """
    A pipe-delimited table.

    Row lengths are not checked against the header. A row with fewer or
    more cells than the header is kept exactly as it was parsed.
    """

    kind: ClassVar[str] = "table"

    headers: tuple[str, ...]
    rows: tuple[tuple[Cell, ...], ...]
    span: tuple[int, int] = field(default=(0, 0), compare=False)

    @property
    def display_headers(self) -> tuple[str, ...]:
        return tuple(_clean_cell(header) for header in self.headers)

    @property
    def display_rows(self) -> tuple[tuple[str, ...], ...]:
        return tuple(tuple(_clean_cell(cell) for cell in row) for row in self.rows)


Block = Union[TextBlock, CodeBlock, TableBlock]


# ---------------------------------------------------------------------------
# Text cleaning
# ---------------------------------------------------------------------------


def clean_text(fragment: str) -> str:
    """
    Strip the markdown noise that plain-text rendering cannot show.

    Heading markers at line start are dropped, ``**`` and backticks are
    removed, and a leading ``-`` or ``*`` bullet becomes ``•``.
    """
    cleaned = _HEADING_RE.sub("", fragment)
    cleaned = cleaned.replace("**", "")
    cleaned = cleaned.replace("`", "")
    return _BULLET_RE.sub(BULLET, cleaned)


def _clean_cell(cell: Cell) -> str:
    if isinstance(cell, (int, float)):
        return str(cell)
    return cell.replace("**", "").strip()


# ---------------------------------------------------------------------------
# Line scanning
# ---------------------------------------------------------------------------


class _Line(NamedTuple):
    text: str
    start: int
    # offset just past the trailing newline (or end of input)
    end: int


def _split_lines(raw: str) -> list[_Line]:
    lines: list[_Line] = []
    offset = 0
    for text in raw.split("\n"):
        end = min(offset + len(text) + 1, len(raw))
        lines.append(_Line(text, offset, end))
        offset = end
    return lines


def _is_table_row(text: str) -> bool:
    stripped = text.strip()
    return "|" in stripped and bool(stripped.replace("|", "").strip())


def _has_outer_pipe(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("|") or stripped.endswith("|")


def _is_separator_row(text: str) -> bool:
    stripped = text.strip()
    return "|" in stripped and "-" in stripped and _SEPARATOR_RE.match(stripped) is not None


def _is_data_row(text: str, piped: bool) -> bool:
    return _is_table_row(text) and (not piped or _has_outer_pipe(text))


def _find_table_spans(lines: list[_Line]) -> list[tuple[int, int]]:
    """Return ``[start, stop)`` line ranges of tables, left to right."""
    spans: list[tuple[int, int]] = []
    i = 0
    while i < len(lines) - 1:
        if _is_table_row(lines[i].text) and _is_separator_row(lines[i + 1].text):
            # A header with outer pipes only takes data rows that have them too.
            piped = _has_outer_pipe(lines[i].text)
            j = i + 2
            while j < len(lines) and _is_data_row(lines[j].text, piped):
                j += 1
            spans.append((i, j))
            i = j
        else:
            i += 1
    return spans


def _find_code_spans(
    lines: list[_Line], start: int, stop: int
) -> list[tuple[int, int, str | None]]:
    """Return ``(open, close, language)`` fence line indexes within ``[start, stop)``."""
    spans: list[tuple[int, int, str | None]] = []
    i = start
    while i < stop:
        opening = _FENCE_OPEN_RE.match(lines[i].text)
        if opening is None:
            i += 1
            continue
        close = next(
            (k for k in range(i + 1, stop) if _FENCE_CLOSE_RE.match(lines[k].text)),
            None,
        )
        if close is None:
            # Any later fence would have closed this one, so nothing else pairs up.
            break
        spans.append((i, close, opening.group(1) or None))
        i = close + 1
    return spans


def _split_cells(text: str) -> list[str]:
    return [cell.strip() for cell in text.split("|") if cell.strip()]


# ---------------------------------------------------------------------------
# Block builders
# ---------------------------------------------------------------------------


def _text_block(raw: str, lines: list[_Line], start: int, stop: int) -> TextBlock | None:
    if start >= stop:
        return None
    span = (lines[start].start, lines[stop - 1].end)
    cleaned = clean_text(raw[span[0] : span[1]].strip()).strip()
    if not cleaned:
        return None
    return TextBlock(cleaned, span=span)


def _table_block(lines: list[_Line], start: int, stop: int) -> TableBlock | None:
    headers = _split_cells(lines[start].text)
    # lines[start + 1] is the separator
    parsed = (_split_cells(line.text) for line in lines[start + 2 : stop])
    rows = [cells for cells in parsed if cells]
    if not headers or not rows:
        return None
    return TableBlock(
        tuple(headers),
        tuple(tuple(row) for row in rows),
        span=(lines[start].start, lines[stop - 1].end),
    )


def _segment_gap(raw: str, lines: list[_Line], start: int, stop: int) -> list[Block]:
    """Segment the lines between two tables into text and code blocks."""
    blocks: list[Block] = []
    cursor = start
    for open_idx, close_idx, language in _find_code_spans(lines, start, stop):
        text = _text_block(raw, lines, cursor, open_idx)
        if text is not None:
            blocks.append(text)
        body = "\n".join(line.text for line in lines[open_idx + 1 : close_idx]).strip()
        blocks.append(
            CodeBlock(language, body, span=(lines[open_idx].start, lines[close_idx].end))
        )
        cursor = close_idx + 1

    text = _text_block(raw, lines, cursor, stop)
    if text is not None:
        blocks.append(text)
    return blocks


def segment(raw: str) -> list[Block]:
    """
    Partition an assistant reply into text, code and table blocks.

    Blocks come back in document order. A table span with no header cells
    or no data rows produces nothing, and its source text is dropped. When
    nothing at all is produced for a non-blank reply, the whole cleaned
    reply is returned as a single :class:`TextBlock`.
    """
    if not raw:
        return []

    lines = _split_lines(raw)
    blocks: list[Block] = []
    cursor = 0
    for table_start, table_stop in _find_table_spans(lines):
        blocks.extend(_segment_gap(raw, lines, cursor, table_start))
        table = _table_block(lines, table_start, table_stop)
        if table is not None:
            blocks.append(table)
        cursor = table_stop
    blocks.extend(_segment_gap(raw, lines, cursor, len(lines)))

    if not blocks:
        cleaned = clean_text(raw).strip()
        if cleaned:
            blocks.append(TextBlock(cleaned, span=(0, len(raw))))
    return blocks


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _table_to_text(block: TableBlock) -> str:
    lines = [
        "| " + " | ".join(block.headers) + " |",
        "|" + "|".join(" --- " for _ in block.headers) + "|",
    ]
    lines.extend("| " + " | ".join(str(cell) for cell in row) + " |" for row in block.rows)
    return "\n".join(lines)


def blocks_to_text(blocks: list[Block]) -> str:
    """Write blocks back out as canonical markdown that :func:`segment` re-reads."""
    parts: list[str] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append(block.body)
        elif isinstance(block, CodeBlock):
            parts.append(f"```{block.language or ''}\n{block.body}\n```")
        else:
            parts.append(_table_to_text(block))
    return "\n\n".join(parts)


def blocks_to_dicts(blocks: list[Block]) -> list[dict[str, Any]]:
    """JSON-ready tagged form of a block sequence."""
    result: list[dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            result.append({"type": block.kind, "body": block.body})
        elif isinstance(block, CodeBlock):
            result.append({"type": block.kind, "language": block.language, "body": block.body})
        else:
            result.append(
                {
                    "type": block.kind,
                    "headers": list(block.headers),
                    "rows": [list(row) for row in block.rows],
                }
            )
    return result
