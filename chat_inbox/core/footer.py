"""
Footer detection for message bodies.

Locates where the primary content of a message ends and trailing signature
or quoted-reply material begins, so the chat view can collapse it. The
detector is a pure text heuristic with no store dependencies.
"""
import re
from dataclasses import dataclass
from typing import Optional, Tuple, Pattern, List

from chat_inbox.config import TRUNCATION_THRESHOLD


FOOTER_SIGNATURE_DELIMITER = "signature_delimiter"
FOOTER_SEPARATOR_RULE = "separator_rule"
FOOTER_MOBILE_SIGNATURE = "mobile_signature"
FOOTER_QUOTE_HEADER = "quote_header"
FOOTER_QUOTE_MARKER = "quote_marker"

_SIGNATURE_DELIMITER = re.compile(r"^--\s*$")

_SEPARATOR_RULE = re.compile(r"^\s*(?:_{3,}|-{3,}|={3,})\s*$")

_MOBILE_SIGNATURE = re.compile(
    r"^\s*(?:"
    r"Sent from my \S.*"
    r"|Sent from (?:Yahoo Mail|Outlook|Mail for Windows)\b.*"
    r"|Get Outlook for (?:iOS|Android)\b.*"
    r"|(?:iPhone|iPad|Android|Xperia|Galaxy)から送信.*"
    r"|Outlook for (?:iOS|Android) を入手.*"
    r")$",
    re.IGNORECASE,
)

# On Mon, Jan 1, 2024 at 10:00 AM John <john@example.com> wrote:
_ENGLISH_QUOTE_HEADER = re.compile(r"^\s*On\s.+\swrote:\s*$", re.IGNORECASE)

# Gmail wraps a long English header after the address
_WRAPPED_HEADER_START = re.compile(r"^\s*On\s", re.IGNORECASE)

_QUOTE_HEADERS: Tuple[Pattern, ...] = (
    _ENGLISH_QUOTE_HEADER,
    # 2024年1月15日(月) 10:00 差出人: ... / 2024/01/15 10:00 山田 <taro@example.jp>:
    re.compile(
        r"^\s*\d{4}[年/.\-]\s*\d{1,2}[月/.\-]\s*\d{1,2}日?.*"
        r"(?:差出人\s*[:：]|<[^<>\s@]+@[^<>\s]+>\s*[:：]\s*$|wrote:\s*$)"
    ),
    # -----Original Message----- / ---------- Forwarded message ---------
    re.compile(
        r"^\s*-{2,}\s*(?:Original Message|Forwarded message|元のメッセージ|転送されたメッセージ)\s*-{2,}\s*$",
        re.IGNORECASE,
    ),
)

_QUOTE_MARKER = re.compile(r"^>")

# Ordered pattern classes: (kind, patterns, may match on the first line)
_PATTERN_CLASSES: List[Tuple[str, Tuple[Pattern, ...], bool]] = [
    (FOOTER_SIGNATURE_DELIMITER, (_SIGNATURE_DELIMITER,), False),
    (FOOTER_SEPARATOR_RULE, (_SEPARATOR_RULE,), False),
    (FOOTER_MOBILE_SIGNATURE, (_MOBILE_SIGNATURE,), True),
    (FOOTER_QUOTE_HEADER, _QUOTE_HEADERS, True),
    (FOOTER_QUOTE_MARKER, (_QUOTE_MARKER,), True),
]


@dataclass(frozen=True)
class FooterSplit:
    """Result of separating a body into content and footer."""
    content: str
    footer: Optional[str]
    offset: Optional[int]  # Offset in the normalized body, None if no footer
    kind: Optional[str] = None


@dataclass(frozen=True)
class BodyAnalysis:
    """
    Display facts about a message body.

    `is_truncatable` and `has_footer` are independent; the UI offers an
    "expand" affordance when either is true.
    """
    main_content: str
    footer: Optional[str]
    has_footer: bool
    is_truncatable: bool
    threshold: int = TRUNCATION_THRESHOLD

    @property
    def offers_expand(self) -> bool:
        return self.is_truncatable or self.has_footer

    def preview(self) -> str:
        """Main content cut to the threshold, with an ellipsis when cut."""
        if not self.is_truncatable:
            return self.main_content
        return self.main_content[:self.threshold] + "..."


def normalize_line_endings(text: str) -> str:
    """Convert CRLF and lone CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _classify_line(line: str, is_first_line: bool) -> Optional[str]:
    for kind, patterns, allowed_on_first_line in _PATTERN_CLASSES:
        if is_first_line and not allowed_on_first_line:
            continue
        for pattern in patterns:
            if pattern.match(line):
                return kind
    return None


def _is_wrapped_quote_header(line: str, next_line: Optional[str]) -> bool:
    if next_line is None or not _WRAPPED_HEADER_START.match(line):
        return False
    return bool(_ENGLISH_QUOTE_HEADER.match(f"{line.rstrip()} {next_line.strip()}"))


def _scan(text: str) -> Tuple[Optional[int], Optional[str]]:
    position = 0
    lines = text.split("\n")
    for index, line in enumerate(lines):
        kind = _classify_line(line, is_first_line=(index == 0))
        if kind is not None:
            return position, kind
        next_line = lines[index + 1] if index + 1 < len(lines) else None
        if _is_wrapped_quote_header(line, next_line):
            return position, FOOTER_QUOTE_HEADER
        position += len(line) + 1
    return None, None


def find_footer_offset(text: Optional[str]) -> Optional[int]:
    """
    Locate the start of the footer in a message body.

    Args:
        text: Raw body text of one message.

    Returns:
        The offset (in the line-ending-normalized text) of the first line
        that starts footer material, or None if no footer was found.
    """
    if not text:
        return None
    offset, _ = _scan(normalize_line_endings(text))
    return offset


def split_footer(text: Optional[str]) -> FooterSplit:
    """
    Separate a body into primary content and footer.

    The content is the text before the footer with trailing whitespace
    trimmed; without a footer the whole body is content.
    """
    normalized = normalize_line_endings(text or "")
    offset, kind = _scan(normalized)
    if offset is None:
        return FooterSplit(content=normalized, footer=None, offset=None)
    return FooterSplit(
        content=normalized[:offset].rstrip(),
        footer=normalized[offset:].strip(),
        offset=offset,
        kind=kind,
    )


def analyze_body(text: Optional[str], threshold: int = TRUNCATION_THRESHOLD) -> BodyAnalysis:
    """
    Compute the display facts for a message body.

    Args:
        text: Raw body text.
        threshold: Length above which content is eligible for truncation.

    Returns:
        A BodyAnalysis with footer and truncation flags kept separate.
    """
    split = split_footer(text)
    return BodyAnalysis(
        main_content=split.content,
        footer=split.footer,
        has_footer=split.offset is not None,
        is_truncatable=len(split.content) > threshold,
        threshold=threshold,
    )
