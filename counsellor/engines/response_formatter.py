"""
Reply normalisation for Counsellor AI.

Turns raw model output into clean plain-text paragraphs: markdown markers
are stripped, list markers become bullets, a few keyword groups get an
emoji prefix and every paragraph ends with punctuation. Purely cosmetic;
the wording of the answer is never changed.
"""

import re
from typing import List, Tuple

NO_REPLY_TEXT = "No response received."

_CODE_BLOCK_RE = re.compile(r"```[\w+-]*\n?(.*?)```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`\n]*)`")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*|__(.+?)__")
_ITALIC_RE = re.compile(r"(?<![\w*])\*(?!\s)([^*\n]+?)\*(?!\w)|(?<!\w)_(?!\s)([^_\n]+?)_(?!\w)")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_STRIKE_RE = re.compile(r"~~(.*?)~~")
_BULLET_RE = re.compile(r"^\s*[-*+]\s+", re.MULTILINE)
_NUMBERED_RE = re.compile(r"^\s*(\d+)[.)]\s+", re.MULTILINE)
_SENTENCE_BREAK_RE = re.compile(r"([.!?])[ \t]+(?=[A-Z])")
_BLANK_LINES_RE = re.compile(r"\n\s*\n\s*")

EMOJI_KEYWORDS: List[Tuple[str, List[str]]] = [
    ("🔑", ["important", "crucial", "key point"]),
    ("💡", ["tip", "suggestion", "recommendation"]),
    ("⚠️", ["warning", "caution"]),
    ("📝", ["note"]),
    ("📌", ["for example", "e.g."]),
    ("✅", ["advantage", "benefit"]),
    ("❌", ["disadvantage", "limitation", "error", "problem"]),
    ("🎯", ["success", "achievement"]),
    ("ℹ️", ["info"]),
]

_EMOJI_PATTERNS = [
    (emoji, re.compile(r"(?<!\w)(" + "|".join(re.escape(k) for k in keywords) + r")(?!\w)", re.IGNORECASE))
    for emoji, keywords in EMOJI_KEYWORDS
]


def strip_markdown(text: str) -> str:
    text = _CODE_BLOCK_RE.sub(lambda m: m.group(1).strip(), text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _BOLD_RE.sub(lambda m: m.group(1) or m.group(2), text)
    # Lists before italics so a leading "* " is not read as emphasis.
    text = _BULLET_RE.sub("• ", text)
    text = _NUMBERED_RE.sub(r"\1. ", text)
    text = _ITALIC_RE.sub(lambda m: m.group(1) or m.group(2), text)
    text = _HEADING_RE.sub("", text)
    text = _STRIKE_RE.sub(r"\1", text)
    return text


def add_emoji_prefixes(text: str) -> str:
    for emoji, pattern in _EMOJI_PATTERNS:
        text = pattern.sub(lambda m, e=emoji: f"{e} {m.group(1)}", text)
    return text


def _finish_paragraph(paragraph: str) -> str:
    p = paragraph.strip()
    if not p:
        return ""
    is_list_item = p.startswith("•") or re.match(r"^\d+\.", p) is not None
    if not is_list_item and not re.search(r"[.!?:]$", p):
        p += "."
    return p[0].upper() + p[1:]


def format_reply(text: str) -> str:
    """Normalise a raw model reply into double-newline separated paragraphs."""
    if not text or not str(text).strip():
        return NO_REPLY_TEXT

    formatted = strip_markdown(str(text).replace("\r\n", "\n"))
    formatted = add_emoji_prefixes(formatted)

    # Ensure paragraph breaks
    formatted = _SENTENCE_BREAK_RE.sub(r"\1\n\n", formatted)
    formatted = _BLANK_LINES_RE.sub("\n\n", formatted)

    paragraphs = [_finish_paragraph(p) for p in formatted.split("\n\n")]
    return "\n\n".join(p for p in paragraphs if p).strip()
