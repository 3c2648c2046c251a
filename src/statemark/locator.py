from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from statemark.codec import INPUTS_MARKER, VALUES_MARKER

STATE_ID_KEY = "_state_id_"


@dataclass(frozen=True)
class InlineLocator:
    """The whole bookmark token travels in the URL."""

    token: str
    base_url: str = ""

    def query(self) -> str:
        return self.token

    def url(self, base_url: Optional[str] = None) -> str:
        return with_query(self.base_url if base_url is None else base_url, self.query())


@dataclass(frozen=True)
class ReferenceLocator:
    """The URL carries a short id; the token lives in a BookmarkStore."""

    id: str
    base_url: str = ""

    def query(self) -> str:
        return f"{STATE_ID_KEY}={quote(self.id, safe='')}"

    def url(self, base_url: Optional[str] = None) -> str:
        return with_query(self.base_url if base_url is None else base_url, self.query())


BookmarkLocator = Union[InlineLocator, ReferenceLocator]


def with_query(base_url: str, query: str) -> str:
    """
    Append a bookmark `query` to `base_url`. The app's own query parameters are
    kept ahead of it; any earlier bookmark in `base_url` is dropped.
    """
    scheme, netloc, path, base_query, fragment = urlsplit(base_url)
    kept = []
    for part in base_query.split("&"):
        if part in (INPUTS_MARKER, VALUES_MARKER) or part.partition("=")[0] == STATE_ID_KEY:
            break
        if part:
            kept.append(part)
    if query:
        kept.append(query)
    return urlunsplit((scheme, netloc, path, "&".join(kept), fragment))


def parse_locator(url: str) -> Optional[BookmarkLocator]:
    """
    Find a bookmark locator in a URL or bare query string.

    Query parameters ahead of the first bookmark section stay in the locator's
    `base_url`, so an app may carry its own parameters alongside a bookmark and
    `locator.url()` gives them back. Returns None when the URL holds no bookmark.
    """
    if not url:
        return None
    if "?" in url or "://" in url:
        base_url, query = with_query(url, ""), urlsplit(url).query
    else:
        base_url, query = "", url.split("#", 1)[0]
    parts = query.split("&")
    for i, part in enumerate(parts):
        key, _, value = part.partition("=")
        if key == STATE_ID_KEY:
            return ReferenceLocator(unquote(value), base_url)
        if part in (INPUTS_MARKER, VALUES_MARKER):
            return InlineLocator("&".join(parts[i:]), base_url)
    return None
