"""
Best-effort SOAP segmentation of legacy chart notes.

Output is heuristic and only ever stored as a non-authoritative historical
note. Nothing in here raises for odd input: unrecognizable text simply
produces an empty note, which callers discard.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

TEXT_SUFFIXES: Tuple[str, ...] = (".txt", ".rtf")
SECTIONS: Tuple[str, ...] = ("subjective", "objective", "assessment", "plan")
_SECTION_ALIASES = {"s": "subjective", "o": "objective", "a": "assessment", "p": "plan"}

# Single-letter headers only count at the start of a line; full words also
# count mid-line when followed by a colon.
SECTION_HEADER = re.compile(
    r"^[ \t]*(?P<line>subjective|objective|assessment|plan|s|o|a|p)[ \t]*[:\-]"
    r"|\b(?P<inline>subjective|objective|assessment|plan)[ \t]*:",
    re.IGNORECASE | re.MULTILINE,
)
PAIN_SCALE = re.compile(r"(?<![\d/])(\d{1,2})\s*/\s*10(?![\d/])")


def _ymd(match: re.Match) -> date:
    return date(int(match.group("y")), int(match.group("m")), int(match.group("d")))


# Filename date tokens, tried in order.
DATE_TOKEN_PATTERNS: Tuple[Tuple[Pattern[str], Callable[[re.Match], date]], ...] = (
    (re.compile(r"(?<!\d)(?P<y>\d{4})[_\-.](?P<m>\d{1,2})[_\-.](?P<d>\d{1,2})(?!\d)"), _ymd),
    (re.compile(r"(?<!\d)(?P<m>\d{1,2})[_\-.](?P<d>\d{1,2})[_\-.](?P<y>\d{4})(?!\d)"), _ymd),
    (re.compile(r"(?<!\d)(?P<y>(?:19|20)\d{2})(?P<m>\d{2})(?P<d>\d{2})(?!\d)"), _ymd),
)
PROVIDER_TOKEN = re.compile(r"(?:^|[_\- ])Dr\.?[_ ](?P<first>[A-Za-z]+)[_ ](?P<last>[A-Za-z]+)", re.IGNORECASE)

_RTF_TOKEN = re.compile(r"\\([a-zA-Z]+)(-?\d+)? ?|\\'([0-9a-fA-F]{2})|\\([^a-zA-Z])|([{}])|[\r\n]+|[^\\{}\r\n]+")
_RTF_SKIP_DESTINATIONS = frozenset(
    {"fonttbl", "colortbl", "stylesheet", "info", "pict", "header", "footer", "listtable", "listoverridetable",
     "rsidtbl", "generator", "themedata", "colorschememapping", "latentstyles", "datastore", "xmlnstbl"}
)
_RTF_SPECIAL = {"par": "\n", "line": "\n", "sect": "\n", "page": "\n", "tab": "\t", "emdash": "-", "endash": "-",
                "bullet": "*", "lquote": "'", "rquote": "'", "ldblquote": '"', "rdblquote": '"'}


@dataclass(frozen=True)
class SoapNote:
    visit_date: Optional[date] = None
    provider_name: Optional[str] = None
    subjective: str = ""
    objective: str = ""
    assessment: str = ""
    plan: str = ""
    pain_scale: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not any(getattr(self, section) for section in SECTIONS)


def strip_rtf(content: str) -> str:
    """Reduce RTF markup to plain text, dropping font/colour tables and metadata groups."""

    if not content.lstrip().startswith("{\\rtf"):
        return content

    pieces: list[str] = []
    stack: list[bool] = []
    skipping = False
    for match in _RTF_TOKEN.finditer(content):
        word, _arg, hex_code, symbol, brace = match.groups()
        text = match.group(0)
        if brace == "{":
            stack.append(skipping)
        elif brace == "}":
            skipping = stack.pop() if stack else False
        elif symbol is not None:
            if symbol == "*":
                skipping = True
            elif not skipping and symbol in "\\{}":
                pieces.append(symbol)
            elif not skipping and symbol == "~":
                pieces.append(" ")
        elif word is not None:
            if word.lower() in _RTF_SKIP_DESTINATIONS:
                skipping = True
            elif not skipping and word in _RTF_SPECIAL:
                pieces.append(_RTF_SPECIAL[word])
        elif hex_code is not None:
            if not skipping:
                pieces.append(bytes([int(hex_code, 16)]).decode("cp1252", errors="replace"))
        elif text[0] in "\r\n":
            continue
        elif not skipping:
            pieces.append(text)
    return "".join(pieces)


def strip_date_tokens(stem: str) -> str:
    """Remove every date-like token from a filename stem."""

    for pattern, _ in DATE_TOKEN_PATTERNS:
        stem = pattern.sub(" ", stem)
    return stem


def parse_visit_date(filename: str) -> Optional[date]:
    stem = Path(filename).stem
    for pattern, build in DATE_TOKEN_PATTERNS:
        for match in pattern.finditer(stem):
            try:
                return build(match)
            except ValueError:
                continue
    return None


def parse_provider_name(filename: str) -> Optional[str]:
    match = PROVIDER_TOKEN.search(Path(filename).stem)
    if match is None:
        return None
    return f"{match.group('first').title()} {match.group('last').title()}"


def parse_pain_scale(text: str) -> Optional[int]:
    for match in PAIN_SCALE.finditer(text):
        value = int(match.group(1))
        if 0 <= value <= 10:
            return value
    return None


def _split_sections(text: str) -> dict[str, str]:
    sections: dict[str, list[str]] = {name: [] for name in SECTIONS}
    headers = list(SECTION_HEADER.finditer(text))
    for index, header in enumerate(headers):
        label = (header.group("line") or header.group("inline")).lower()
        name = _SECTION_ALIASES.get(label, label)
        end = headers[index + 1].start() if index + 1 < len(headers) else len(text)
        body = text[header.end() : end].strip()
        if body:
            sections[name].append(body)
    return {name: "\n".join(parts) for name, parts in sections.items()}


def extract_soap_note(text: str, filename: str) -> SoapNote:
    """
    Segment ``text`` into SOAP sections and read visit metadata from ``filename``.

    Each section runs from its header to the next recognized header or the
    end of the text. Text with no recognized headers yields an empty note.
    """

    plain = strip_rtf(text or "")
    sections = _split_sections(plain)
    return SoapNote(
        visit_date=parse_visit_date(filename),
        provider_name=parse_provider_name(filename),
        pain_scale=parse_pain_scale(plain),
        **sections,
    )


def read_chart_note(path: Path | str, filename: str | None = None) -> Optional[SoapNote]:
    """
    Extract a SOAP note from a text or RTF file on disk.

    Returns ``None`` for binary formats and for files that cannot be read;
    those are still attached as opaque documents by the caller.
    """

    path = Path(path)
    if path.suffix.lower() not in TEXT_SUFFIXES:
        return None
    try:
        raw = path.read_bytes()
    except OSError as exc:
        logger.warning("Unable to read chart note %s: %s", path.name, exc)
        return None
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = raw.decode("cp1252", errors="replace")
    return extract_soap_note(text, filename or path.name)
