from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import unquote, urlsplit

from dateutil import parser as date_parser

from app.core.logging import get_logger
from app.models.feed_item import FeedItem, PostIdentity

logger = get_logger()

MAX_DESCRIPTION_LENGTH = 500
TRUNCATION_SUFFIX = "…"

ATOM_NS = 'xmlns="http://www.w3.org/2005/Atom"'
RSS1_NS = 'xmlns="http://purl.org/rss/1.0/"'
JSON_FEED_VERSION_PREFIX = "https://jsonfeed.org/version/"

_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_ENTITY_RE = re.compile(
    r"&(#\d+|#x[0-9a-f]+|amp|lt|gt|quot|apos|nbsp|mdash|ndash|hellip|copy|reg|trade);",
    re.IGNORECASE,
)
_NAMED_ENTITIES = {
    "amp": "&",
    "lt": "<",
    "gt": ">",
    "quot": '"',
    "apos": "'",
    "nbsp": " ",
    "mdash": "—",
    "ndash": "–",
    "hellip": "…",
    "copy": "©",
    "reg": "®",
    "trade": "™",
}

_ITEM_RE = re.compile(r"<item\b([^>]*)>(.*?)</item>", re.DOTALL | re.IGNORECASE)
_ENTRY_RE = re.compile(r"<entry\b[^>]*>(.*?)</entry>", re.DOTALL | re.IGNORECASE)
_ATOM_LINK_RE = re.compile(r"<link\b([^>]*?)/?>(?:</link>)?", re.IGNORECASE)
_ENCLOSURE_RE = re.compile(r"<enclosure\b([^>]*)/?>", re.IGNORECASE)
_SELECTOR_RE = re.compile(r'^([\w:.-]+)(?:\[([\w:.-]+)="([^"]*)"\])?$')

_MARKDOWN_LINK_RE = re.compile(r"^\[.*?\]\((.*?)\)$")
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_RFC822_RE = re.compile(r"(\w+),\s+(\d+)\s+(\w+)\s+(\d{4})\s+(\d{2}):(\d{2}):(\d{2})")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Candidate tags per field; the first non-empty match wins.
RSS2_FIELDS: Dict[str, Sequence[str]] = {
    "title": ("title",),
    "url": ("link", 'guid[isPermaLink="true"]', "guid"),
    "guid": ("guid", "link"),
    "published_at": ("pubDate", "dc:date", "published"),
    "description": ("description", "content:encoded", "summary"),
    "author": ("author", "dc:creator", "creator"),
    "categories": ("category",),
    "enclosure_url": ("enclosure",),
}

ATOM_FIELDS: Dict[str, Sequence[str]] = {
    "title": ("title",),
    "guid": ("id", "guid"),
    "published_at": ("updated", "published", "modified"),
    "description": ("summary", "content", "subtitle"),
    "author": ("author/name", "author", "dc:creator"),
    "categories": ("category",),
}

RSS1_FIELDS: Dict[str, Sequence[str]] = {
    "title": ("title", "dc:title"),
    "url": ("link", "rdf:about"),
    "guid": ("guid", "dc:identifier", "link"),
    "published_at": ("dc:date", "pubDate", "dcterms:created"),
    "description": ("description", "dc:description", "content:encoded"),
    "author": ("dc:creator", "author"),
    "categories": ("dc:subject", "category"),
}


# --------------------------------------------------------------------
# Text helpers
# --------------------------------------------------------------------

def _decode_entity(match: re.Match) -> str:
    body = match.group(1)
    lowered = body.lower()
    try:
        if lowered.startswith("#x"):
            code = int(body[2:], 16)
        elif lowered.startswith("#"):
            code = int(body[1:])
        else:
            return _NAMED_ENTITIES[lowered]
        if code == 160:
            return " "
        return chr(code)
    except (ValueError, OverflowError, KeyError):
        return match.group(0)


def decode_entities(text: str) -> str:
    """Decode the supported entities in one pass, so `&amp;lt;` becomes `&lt;`."""
    return _ENTITY_RE.sub(_decode_entity, text)


def clean_text(text: Optional[str]) -> str:
    if not text:
        return ""
    cleaned = _CDATA_RE.sub(r"\1", text)
    cleaned = decode_entities(cleaned)
    cleaned = _HTML_TAG_RE.sub("", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def truncate_description(description: str, max_length: int = MAX_DESCRIPTION_LENGTH) -> str:
    if not description or len(description) <= max_length:
        return description
    truncated = description[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        return truncated[:last_space] + TRUNCATION_SUFFIX
    return truncated + TRUNCATION_SUFFIX


def _iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_date(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        return date_parser.parse(value)
    except (ValueError, OverflowError, TypeError):
        pass

    m = _RFC822_RE.search(value)
    if m:
        _, day, month, year, hour, minute, second = m.groups()
        for index, name in enumerate(_MONTHS):
            if month.startswith(name):
                try:
                    return datetime(
                        int(year), index + 1, int(day), int(hour), int(minute), int(second),
                        tzinfo=timezone.utc,
                    )
                except ValueError:
                    return None
    return None


def normalize_date(value: Optional[str], *, now: Optional[datetime] = None) -> str:
    """
    Normalize a feed date to an ISO-8601 UTC string (`...T10:00:00.000Z`).

    Unparsable or empty input, or a date with no UTC equivalent, yields the
    current time.
    """
    text = str(value or "").strip()
    parsed = _parse_date(text) if text else None
    if parsed is not None:
        try:
            return _iso_utc(parsed)
        except (OverflowError, ValueError) as exc:
            logger.debug("feed_date_out_of_range", value=text[:64], error=str(exc))
    return _iso_utc(now or datetime.now(timezone.utc))


# --------------------------------------------------------------------
# URL identity
# --------------------------------------------------------------------

def absolutize_url(url: str) -> str:
    normalized = (url or "").strip()
    if not normalized:
        return ""
    if normalized.startswith("<") and normalized.endswith(">"):
        normalized = normalized[1:-1]
    elif normalized.startswith("[") and normalized.endswith("]"):
        normalized = normalized[1:-1]
    if not _SCHEME_RE.match(normalized):
        normalized = "https://" + normalized
    return normalized


def normalize_url(value: Any) -> str:
    """
    Canonical URL used for dedup keys: https scheme, lower-cased host,
    collapsed slashes, no trailing slash, no query or fragment.

    Markdown `[text](url)` and `<url>` / `[url]` wrappers are removed first.
    Input that cannot be parsed as a URL is returned cleaned but otherwise as-is.
    """
    s = str(value or "")
    md = _MARKDOWN_LINK_RE.match(s)
    if md:
        s = md.group(1)
    s = re.sub(r"[>\]]+$", "", re.sub(r"^[<\[]+", "", s.strip()))

    candidate = s if _SCHEME_RE.match(s) else "https://" + s
    try:
        parts = urlsplit(candidate)
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return s
    if not host:
        return s
    if port is not None:
        host = f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parts.path or "/")
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return f"https://{host}{path}"


def post_id_from_normalized_url(normalized_url: str) -> str:
    try:
        path = urlsplit(normalized_url).path
    except ValueError:
        return ""
    return unquote(path.strip("/"))


def post_identity(item: FeedItem) -> PostIdentity:
    """
    Dedup identity of an item: path-derived post id plus normalized URL.
    Falls back to guid, then title, then the normalized URL when the path is empty.
    """
    normalized = normalize_url(item.url)
    post_id = post_id_from_normalized_url(normalized) or item.guid or item.title or normalized
    return PostIdentity(post_id=post_id, normalized_url=normalized)


# --------------------------------------------------------------------
# XML extraction
# --------------------------------------------------------------------

def _element_re(tag: str) -> re.Pattern:
    name = re.escape(tag)
    # Opening tag must not be self-closing.
    return re.compile(rf"<{name}((?:\s[^>]*?)?)(?<!/)>(.*?)</{name}>", re.DOTALL | re.IGNORECASE)


def _attr(attrs: str, name: str) -> str:
    m = re.search(rf'\b{re.escape(name)}\s*=\s*["\']([^"\']*)["\']', attrs or "", re.IGNORECASE)
    return m.group(1) if m else ""


def _matches(block: str, selector: str) -> List[str]:
    """Inner texts of every element matching `tag` or `tag[attr="value"]`."""
    m = _SELECTOR_RE.match(selector)
    if not m:
        return []
    tag, attr_name, attr_value = m.groups()
    found = []
    for element in _element_re(tag).finditer(block):
        if attr_name and _attr(element.group(1), attr_name).lower() != attr_value.lower():
            continue
        found.append(element.group(2))
    return found


def _first_text(block: str, path: str) -> str:
    if "/" in path:
        parent, child = path.split("/", 1)
        for parent_block in _matches(block, parent)[:1]:
            return _first_text(parent_block, child)
        return ""
    for raw in _matches(block, path)[:1]:
        return clean_text(raw)
    return ""


def _categories(block: str, path: str) -> List[str]:
    values = [clean_text(raw) for raw in _matches(block, path)]
    if not values:
        # Atom style <category term="..."/>
        tag_re = re.compile(rf"<{re.escape(path)}\b([^>]*)/>", re.IGNORECASE)
        values = [clean_text(_attr(m.group(1), "term")) for m in tag_re.finditer(block)]
    return [v for v in values if v]


def extract_fields(block: str, mappings: Mapping[str, Sequence[str]]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for field, paths in mappings.items():
        value: Any = [] if field == "categories" else ""
        for path in paths:
            if field == "categories":
                value = _categories(block, path)
            else:
                value = _first_text(block, path)
                if not value and field == "enclosure_url":
                    m = _ENCLOSURE_RE.search(block)
                    if m:
                        value = _attr(m.group(1), "url")
            if value:
                break
        fields[field] = value
    return fields


def normalize_item(raw: Mapping[str, Any], *, now: Optional[datetime] = None) -> FeedItem:
    url = absolutize_url(str(raw.get("url") or ""))
    categories = raw.get("categories")
    return FeedItem(
        url=url,
        title=str(raw.get("title") or "") or "Untitled",
        guid=str(raw.get("guid") or "") or url,
        published_at=normalize_date(raw.get("published_at"), now=now),
        description=truncate_description(str(raw.get("description") or "")),
        author=str(raw.get("author") or ""),
        categories=[str(c) for c in categories] if isinstance(categories, list) else [],
        enclosure_url=str(raw.get("enclosure_url") or ""),
    )


def parse_rss2_items(xml: str) -> List[FeedItem]:
    items: List[FeedItem] = []
    for m in _ITEM_RE.finditer(xml):
        fields = extract_fields(m.group(2), RSS2_FIELDS)
        if fields["url"]:
            items.append(normalize_item(fields))
    return items


def parse_atom_entries(xml: str) -> List[FeedItem]:
    items: List[FeedItem] = []
    for m in _ENTRY_RE.finditer(xml):
        block = m.group(1)

        url = ""
        for link in _ATOM_LINK_RE.finditer(block):
            attrs = link.group(1)
            rel = _attr(attrs, "rel") or "alternate"
            href = _attr(attrs, "href")
            if href and (rel == "alternate" or not url):
                url = href
                if rel == "alternate":
                    break

        fields = extract_fields(block, ATOM_FIELDS)
        fields["url"] = url or fields["guid"]
        if fields["url"]:
            items.append(normalize_item(fields))
    return items


def parse_rss1_items(xml: str) -> List[FeedItem]:
    items: List[FeedItem] = []
    for m in _ITEM_RE.finditer(xml):
        fields = extract_fields(m.group(2), RSS1_FIELDS)
        if not fields["url"]:
            fields["url"] = _attr(m.group(1), "rdf:about")
        if fields["url"]:
            items.append(normalize_item(fields))
    return items


def _dedupe(items: Iterable[FeedItem]) -> List[FeedItem]:
    seen = set()
    unique: List[FeedItem] = []
    for item in items:
        key = normalize_url(item.url)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def parse_xml_feed(xml: str) -> List[FeedItem]:
    is_atom = "<feed" in xml and ATOM_NS in xml
    is_rss1 = "<rdf:RDF" in xml or RSS1_NS in xml
    is_rss2 = "<rss" in xml and 'version="2.0"' in xml

    items: List[FeedItem] = []
    if is_atom or "<entry" in xml:
        items.extend(parse_atom_entries(xml))
    if is_rss2 or "<item>" in xml:
        items.extend(parse_rss2_items(xml))
    if is_rss1 or "<item " in xml:
        items.extend(parse_rss1_items(xml))

    if not items:
        items.extend(parse_rss2_items(xml))
        items.extend(parse_atom_entries(xml))
        items.extend(parse_rss1_items(xml))

    return _dedupe(items)


def _json_author(entry: Mapping[str, Any]) -> str:
    author = entry.get("author")
    if isinstance(author, dict) and author.get("name"):
        return str(author["name"])
    authors = entry.get("authors")
    if isinstance(authors, list) and authors and isinstance(authors[0], dict):
        return str(authors[0].get("name") or "")
    return ""


def _json_enclosure(entry: Mapping[str, Any]) -> str:
    attachments = entry.get("attachments")
    if isinstance(attachments, list) and attachments and isinstance(attachments[0], dict):
        return str(attachments[0].get("url") or "")
    return ""


def parse_json_feed(text: str) -> List[FeedItem]:
    try:
        feed = json.loads(text)
    except ValueError as exc:
        logger.warning("feed_json_parse_failed", error=str(exc))
        return []

    if not isinstance(feed, dict):
        return []
    version = str(feed.get("version") or "")
    if not version.startswith(JSON_FEED_VERSION_PREFIX):
        return []

    entries = feed.get("items")
    if entries is None:
        return []
    if not isinstance(entries, list):
        logger.warning("feed_json_parse_failed", error=f"items is {type(entries).__name__}, expected list")
        return []

    items: List[FeedItem] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        url = entry.get("url") or entry.get("external_url") or entry.get("id") or ""
        if not url:
            continue
        tags = entry.get("tags")
        raw = {
            "title": clean_text(str(entry.get("title") or entry.get("summary") or "")),
            "url": str(url),
            "guid": str(entry.get("id") or entry.get("url") or ""),
            "published_at": entry.get("date_published") or entry.get("date_modified") or "",
            "description": clean_text(
                str(entry.get("content_html") or entry.get("content_text") or entry.get("summary") or "")
            ),
            "author": clean_text(_json_author(entry)),
            "categories": [str(t) for t in tags if t] if isinstance(tags, list) else [],
            "enclosure_url": _json_enclosure(entry),
        }
        items.append(normalize_item(raw))
    return items


def parse_feed(content: str, content_type: str = "") -> List[FeedItem]:
    """
    Parse RSS 2.0, RSS 1.0/RDF, Atom or JSON Feed content into FeedItems.

    Items without a URL are dropped; XML results are unique per normalized URL.
    """
    trimmed = (content or "").strip()
    if trimmed.startswith("{") or "json" in (content_type or "").lower():
        return parse_json_feed(trimmed)
    return parse_xml_feed(trimmed)


def detect_feed_type(content: str) -> str:
    """
    Returns:
        'json-feed', 'atom', 'rss-1.0', 'rss-2.0', 'rss' or 'unknown'
    """
    trimmed = (content or "").strip()

    if trimmed.startswith("{"):
        try:
            data = json.loads(trimmed)
        except ValueError:
            data = None
        if isinstance(data, dict) and "jsonfeed.org" in str(data.get("version") or ""):
            return "json-feed"

    if ATOM_NS in trimmed:
        return "atom"
    if "<rdf:RDF" in trimmed or RSS1_NS in trimmed:
        return "rss-1.0"
    if "<rss" in trimmed and 'version="2.0"' in trimmed:
        return "rss-2.0"
    if "<rss" in trimmed:
        return "rss"
    if "<feed" in trimmed:
        return "atom"
    return "unknown"


def is_valid_feed_url(url: str) -> bool:
    try:
        parts = urlsplit(url or "")
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)
