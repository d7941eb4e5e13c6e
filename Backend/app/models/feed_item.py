from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class FeedItem(BaseModel):
    """
    Canonical representation of a single syndication entry, produced per parse
    by the feed parser regardless of the source format (RSS 2.0, RSS 1.0/RDF,
    Atom or JSON Feed).
    """

    url: str
    title: str = "Untitled"
    guid: str = ""
    # ISO-8601 UTC string; "now" when the source date could not be parsed.
    published_at: str
    description: str = ""
    author: str = ""
    categories: List[str] = Field(default_factory=list)
    enclosure_url: str = ""


class PostIdentity(BaseModel):
    """Stable dedup keys derived from a FeedItem."""

    post_id: str
    normalized_url: str
