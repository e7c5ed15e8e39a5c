from __future__ import annotations

import re
from html.parser import HTMLParser
from typing import Optional

ORGANIC_KEYWORDS = ("organic", "økologisk", "okologisk", "ekologisk")
ORGANIC_TOKENS = frozenset({"oko", "øko", "eko", "bio"})
WORD_RE = re.compile(r"\w+")
EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


class DescriptionText(HTMLParser):
    """Collects the readable words of a Shopify ``body_html`` fragment."""

    hidden = frozenset({"script", "style", "noscript", "svg", "iframe", "template"})

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.words: list[str] = []
        self._hidden_open = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, Optional[str]]]) -> None:
        if tag in self.hidden:
            self._hidden_open += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self.hidden:
            self._hidden_open = max(0, self._hidden_open - 1)

    def handle_data(self, data: str) -> None:
        if not self._hidden_open:
            self.words.extend(data.split())


def _printable(text: str) -> str:
    return "".join(ch for ch in text if ch.isprintable())


def _truncate(text: str, max_chars: int) -> str:
    return text[:max_chars] if max_chars > 0 else text


def sanitize_html_to_text(html: str, max_chars: int) -> str:
    if not html:
        return ""
    parser = DescriptionText()
    parser.feed(html)
    parser.close()
    text = EMAIL_RE.sub("[redacted email]", _printable(" ".join(parser.words)))
    return _truncate(text, max_chars)


def sanitize_prompt_field(value: str, max_chars: int) -> str:
    return _truncate(_printable(" ".join((value or "").split())), max_chars)


def looks_organic(*values: str) -> bool:
    for value in values:
        lowered = (value or "").lower()
        if any(keyword in lowered for keyword in ORGANIC_KEYWORDS):
            return True
        if ORGANIC_TOKENS.intersection(WORD_RE.findall(lowered)):
            return True
    return False


def strip_code_fences(text: str) -> str:
    return FENCE_RE.sub("", text.strip()).strip()
