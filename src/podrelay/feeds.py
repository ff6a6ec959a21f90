"""Feed document parsing: RSS 2.0 (with iTunes extensions) and Atom.

XML is parsed with defusedxml so hostile documents (entity expansion,
external entities) are rejected instead of expanded. Descriptions are
converted from HTML to plain text with BeautifulSoup.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET  # nosec B405: only used for the Element type
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from bs4 import BeautifulSoup
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError as XMLParseError
from defusedxml.ElementTree import fromstring as safe_fromstring

from podrelay.errors import ParseError
from podrelay.models.catalog import Episode, ParsedFeed

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"
ATOM_NS = "http://www.w3.org/2005/Atom"

_LOOKS_LIKE_HTML_RE = re.compile(r"</?[a-z][\s\S]*>", re.IGNORECASE)
_INLINE_WS_RE = re.compile(r"[ \t\xa0]+")
_TRAILING_TIME_RE = re.compile(r"\s+\d{1,2}:\d{2}(:\d{2})?.*$")

_LINE_BREAKING_TAGS = ["p", "li", "ul", "ol", "div", "h1", "h2", "h3", "h4", "h5", "h6"]


def html_to_text(html: str | None, bullet: str = "• ") -> str:
    """Convert an HTML fragment to plain text.

    ``<br>`` and the end of block elements become line breaks, list items are
    prefixed with *bullet*, runs of spaces collapse, and blank lines are
    dropped. Input that does not look like HTML only has its whitespace
    collapsed.
    """
    raw = (html or "").strip()
    if not raw:
        return ""
    if not _LOOKS_LIKE_HTML_RE.search(raw):
        return " ".join(raw.split())

    soup = BeautifulSoup(raw, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for li in soup.find_all("li"):
        li.insert(0, bullet)
    for tag in soup.find_all(_LINE_BREAKING_TAGS):
        tag.append("\n")

    text = soup.get_text().replace("\r", "")
    lines = (_INLINE_WS_RE.sub(" ", line).strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def normalize_pub_date(raw: str | None) -> str:
    """Return ``YYYY-MM-DD`` (UTC) for a parseable RFC 822 or ISO 8601 date.

    Unparseable values are trimmed to their date-looking part rather than
    dropped, so a sloppy feed still shows something.
    """
    value = (raw or "").strip()
    if not value:
        return ""

    parsed: datetime | None = None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None

    if parsed is None:
        short = value.split(",")[-1].strip()
        return _TRAILING_TIME_RE.sub("", short)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.date().isoformat()


def parse_feed(xml_text: str) -> ParsedFeed:
    """Parse an RSS or Atom document into a ``ParsedFeed``.

    Raises:
        ParseError: The document is not well-formed XML, is rejected by
            defusedxml, or is neither an RSS channel nor an Atom feed.
    """
    if not (xml_text or "").strip():
        raise ParseError("Empty feed document")
    try:
        root = safe_fromstring(xml_text)
    except (XMLParseError, DefusedXmlException) as exc:
        raise ParseError(f"Feed is not well-formed XML: {exc}") from exc

    if root.tag == f"{{{ATOM_NS}}}feed":
        return _parse_atom(root)

    channel = root if root.tag == "channel" else root.find("channel")
    if channel is None:
        raise ParseError(f"Not an RSS or Atom document (root element {root.tag!r})")
    return _parse_rss(channel)


# ---------------------------------------------------------------------------
# RSS
# ---------------------------------------------------------------------------


def _parse_rss(channel: ET.Element) -> ParsedFeed:
    artwork = _attr(channel.find(f"{{{ITUNES_NS}}}image"), "href") or _text(
        channel.find("image/url")
    )
    episodes = [ep for ep in (_rss_episode(item) for item in channel.iter("item")) if ep]
    return ParsedFeed(
        title=_text(channel.find("title")),
        description=html_to_text(_text(channel.find("description"))),
        artwork_url=artwork,
        episodes=episodes,
    )


def _rss_episode(item: ET.Element) -> Episode | None:
    audio_url = _attr(item.find("enclosure"), "url")
    if not audio_url:
        return None
    description = (
        _text(item.find(f"{{{ITUNES_NS}}}summary"))
        or _text(item.find("description"))
        or _text(item.find(f"{{{CONTENT_NS}}}encoded"))
    )
    return Episode(
        id=_text(item.find("guid")) or audio_url,
        title=_text(item.find("title")) or audio_url,
        description=html_to_text(description),
        audio_url=audio_url,
        pub_date=normalize_pub_date(_text(item.find("pubDate"))),
    )


# ---------------------------------------------------------------------------
# Atom
# ---------------------------------------------------------------------------


def _parse_atom(feed: ET.Element) -> ParsedFeed:
    artwork = (
        _attr(feed.find(f"{{{ITUNES_NS}}}image"), "href")
        or _text(feed.find(f"{{{ATOM_NS}}}logo"))
        or _text(feed.find(f"{{{ATOM_NS}}}icon"))
    )
    entries = feed.findall(f"{{{ATOM_NS}}}entry")
    return ParsedFeed(
        title=_text(feed.find(f"{{{ATOM_NS}}}title")),
        description=html_to_text(_text(feed.find(f"{{{ATOM_NS}}}subtitle"))),
        artwork_url=artwork,
        episodes=[ep for ep in (_atom_episode(entry) for entry in entries) if ep],
    )


def _atom_episode(entry: ET.Element) -> Episode | None:
    audio_url = ""
    for link in entry.findall(f"{{{ATOM_NS}}}link"):
        if link.get("rel") == "enclosure":
            audio_url = (link.get("href") or "").strip()
            if audio_url:
                break
    if not audio_url:
        return None
    description = (
        _text(entry.find(f"{{{ITUNES_NS}}}summary"))
        or _text(entry.find(f"{{{ATOM_NS}}}summary"))
        or _text(entry.find(f"{{{ATOM_NS}}}content"))
    )
    published = _text(entry.find(f"{{{ATOM_NS}}}published")) or _text(
        entry.find(f"{{{ATOM_NS}}}updated")
    )
    return Episode(
        id=_text(entry.find(f"{{{ATOM_NS}}}id")) or audio_url,
        title=_text(entry.find(f"{{{ATOM_NS}}}title")) or audio_url,
        description=html_to_text(description),
        audio_url=audio_url,
        pub_date=normalize_pub_date(published),
    )


def _text(element: ET.Element | None) -> str:
    if element is None:
        return ""
    return "".join(element.itertext()).strip()


def _attr(element: ET.Element | None, name: str) -> str:
    if element is None:
        return ""
    return (element.get(name) or "").strip()
