"""Markup sanitization for content received from remote servers."""

import html
import re
from html.parser import HTMLParser
from typing import Any

# Maximum lengths applied after sanitization
ACTOR_SUMMARY_MAX_LENGTH = 500
ACTOR_NAME_MAX_LENGTH = 30
ACTOR_USERNAME_MAX_LENGTH = 30
OBJECT_CONTENT_MAX_LENGTH = 100_000
OBJECT_SUMMARY_MAX_LENGTH = 500
OBJECT_NAME_MAX_LENGTH = 30

ALLOWED_TAGS = frozenset({
    "p", "br", "span", "a", "strong", "em", "b", "i", "u",
    "code", "pre", "blockquote", "ul", "ol", "li",
})
VOID_TAGS = frozenset({"br"})
# Elements dropped together with everything inside them
DROPPED_TAGS = frozenset({"script", "style", "iframe", "object", "embed", "template", "noscript"})
ALLOWED_ATTRIBUTES = {
    "a": frozenset({"href", "rel", "class"}),
    "span": frozenset({"class"}),
}
ALLOWED_URL_SCHEMES = ("http://", "https://", "mailto:")


class _Sanitizer(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.out: list[str] = []
        self._open: list[str] = []
        self._dropping = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROPPED_TAGS:
            self._dropping += 1
            return
        if self._dropping or tag not in ALLOWED_TAGS:
            return

        allowed = ALLOWED_ATTRIBUTES.get(tag, frozenset())
        rendered = []
        for name, value in attrs:
            if name not in allowed or value is None:
                continue
            if name == "href" and not value.strip().lower().startswith(ALLOWED_URL_SCHEMES):
                continue
            rendered.append(f' {name}="{html.escape(value, quote=True)}"')

        self.out.append(f"<{tag}{''.join(rendered)}>")
        if tag not in VOID_TAGS:
            self._open.append(tag)

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROPPED_TAGS:
            return
        self.handle_starttag(tag, attrs)
        if tag in self._open and tag not in VOID_TAGS:
            self.handle_endtag(tag)

    def handle_endtag(self, tag: str) -> None:
        if tag in DROPPED_TAGS:
            self._dropping = max(0, self._dropping - 1)
            return
        if self._dropping or tag not in self._open:
            return
        # Close anything left open inside this element
        while self._open:
            current = self._open.pop()
            self.out.append(f"</{current}>")
            if current == tag:
                break

    def handle_data(self, data: str) -> None:
        if not self._dropping:
            self.out.append(html.escape(data, quote=False))

    def result(self) -> str:
        self.close()
        while self._open:
            self.out.append(f"</{self._open.pop()}>")
        return "".join(self.out)


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self._dropping = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROPPED_TAGS:
            self._dropping += 1
        elif tag == "br":
            self.parts.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in DROPPED_TAGS:
            self._dropping = max(0, self._dropping - 1)
        elif tag == "p":
            self.parts.append("\n\n")

    def handle_data(self, data: str) -> None:
        if not self._dropping:
            self.parts.append(data)


def sanitize_content(content: str) -> str:
    """Reduce remote markup to a safe subset of tags and attributes.

    Args:
        content: HTML fragment from a remote document

    Returns:
        Sanitized HTML
    """
    parser = _Sanitizer()
    parser.feed(content)
    return parser.result()


def get_text_content(content: str) -> str:
    """Return the plain text of an HTML fragment."""
    parser = _TextExtractor()
    parser.feed(content)
    parser.close()
    text = "".join(parser.parts)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def clamp(value: str, max_length: int) -> str:
    return value[:max_length] if len(value) > max_length else value


def sanitize_object(data: dict[str, Any]) -> dict[str, Any]:
    """Sanitize the content fields of a remote object document.

    Returns a new dictionary; unknown fields are kept untouched.
    """
    obj = dict(data)
    if isinstance(obj.get("content"), str):
        obj["content"] = clamp(sanitize_content(obj["content"]), OBJECT_CONTENT_MAX_LENGTH)
    if isinstance(obj.get("summary"), str):
        obj["summary"] = clamp(sanitize_content(obj["summary"]), OBJECT_SUMMARY_MAX_LENGTH)
    if isinstance(obj.get("name"), str):
        obj["name"] = clamp(get_text_content(obj["name"]), OBJECT_NAME_MAX_LENGTH)
    return obj
