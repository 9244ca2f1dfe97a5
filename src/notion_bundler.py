"""Notion database bundler.

Exports a Notion database (or a single page) into category-organized,
version-deduplicated Markdown:
- fetch: paginated, retried, concurrency-bounded page acquisition
- render: nested block trees flattened to Markdown, child pages marked
  with <!--subpage--> so they can be split out again later
- resolve: one page (or subpage section) kept per title, latest version wins

Token: --api-key, --token-file, NOTION_API_KEY (environment or .env) or the
config file.
"""

import argparse
import asyncio
import collections
import dataclasses
import json
import logging
import os
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar, Union

import httpx
import parsy as P
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-bundler")

T = TypeVar("T")


# =============================================================================
# Errors
# =============================================================================


class NotionBundlerError(Exception):
    """Base class for every error this module raises on purpose."""


class ConfigError(NotionBundlerError):
    """Missing credentials, unknown database, or an invalid option value."""


class NotionAPIError(NotionBundlerError):
    """An error response (or transport failure) from the Notion API."""

    def __init__(self, message: str, status: int = 0, code: str = ""):
        super().__init__(message)
        self.status = status
        self.code = code


class AuthError(NotionAPIError):
    """Token rejected, or the integration lacks access. Never retried."""


class NotFoundError(NotionAPIError):
    """The object does not exist or is not shared with the integration."""


class TransientRemoteError(NotionAPIError):
    """Rate limiting, server-side failure, or a network error. Retryable."""


def _error_from_response(response: httpx.Response) -> NotionAPIError:
    """Translate a failed Notion response into the matching error class."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("code") or ""
    message = body.get("message") or response.text[:300] or response.reason_phrase

    if status in (401, 403):
        error_class = AuthError
    elif status == 404:
        error_class = NotFoundError
    elif status == 429 or status >= 500:
        error_class = TransientRemoteError
    else:
        error_class = NotionAPIError
    return error_class(f"HTTP {status}: {message}", status=status, code=code)


def _is_not_found(error: NotionAPIError) -> bool:
    """True for errors meaning "not an object of the kind that was asked for".

    Retrieving a page id as a database answers 404, or 400 validation_error
    on some workspaces; both mean the probe should move on.
    """
    if isinstance(error, NotFoundError):
        return True
    return error.status == 400 and error.code in ("validation_error", "object_not_found")


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format an error for a tool response, with an optional hint."""
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "unknown_id": "Provide a full Notion UUID/URL or a database alias from the config file.",
    "ref_gone": "The object may be deleted, in trash, or not shared with this integration.",
    "invalid_token": "Token is invalid or expired, or the database is not shared with the integration.",
    "no_database": "Pass a database id/alias, set NOTION_DATABASE_ID, or add one to the config file.",
}


# =============================================================================
# ID System
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a page or database URL.

    Handles formats like:
    - https://notion.so/workspace/Page-Title-abc123def456...
    - https://www.notion.so/abc123def456...?v=...
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def resolve_object_id(ref: str) -> str:
    """Turn a UUID (dashed or not) or a Notion URL into a dashed UUID."""
    ref = ref.strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    extracted = extract_uuid_from_url(ref)
    if extracted:
        return extracted
    raise ConfigError(_error("UNKNOWN_ID", "Could not resolve reference", hint=HINTS["unknown_id"], ref=ref))


# =============================================================================
# Notion Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
PAGE_SIZE = 100


class NotionClient:
    """Minimal async Notion REST client.

    Every call either returns the decoded JSON body or raises one of the
    NotionAPIError subclasses. Retrying is left to the caller (see
    retry_async), so one call here is exactly one HTTP request.
    """

    def __init__(
        self,
        token: str,
        *,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and not self._http.is_closed:
            await self._http.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        url = f"{NOTION_API_BASE}{endpoint}"
        try:
            response = await self._http.request(
                method, url, headers=self._headers, json=json_body, params=params
            )
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{type(e).__name__}: {e}", status=0) from e

        if response.is_error:
            raise _error_from_response(response)
        return response.json()

    async def query_database(
        self,
        database_id: str,
        cursor: Optional[str] = None,
        sorts: Optional[list[dict]] = None,
    ) -> dict:
        """One page of database rows: {results, next_cursor, has_more}."""
        body: dict = {"page_size": PAGE_SIZE}
        if cursor:
            body["start_cursor"] = cursor
        if sorts:
            body["sorts"] = sorts
        return await self._request("POST", f"/databases/{database_id}/query", json_body=body)

    async def retrieve_database(self, database_id: str) -> dict:
        return await self._request("GET", f"/databases/{database_id}")

    async def retrieve_page(self, page_id: str) -> dict:
        return await self._request("GET", f"/pages/{page_id}")

    async def list_block_children(self, block_id: str, cursor: Optional[str] = None) -> dict:
        """One page of a block's children: {results, next_cursor, has_more}."""
        params: dict = {"page_size": PAGE_SIZE}
        if cursor:
            params["start_cursor"] = cursor
        return await self._request("GET", f"/blocks/{block_id}/children", params=params)


# =============================================================================
# Retry & Concurrency
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Rate limits (429), server errors (5xx) and network failures."""
    return isinstance(error, TransientRemoteError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: retries + 1 tries in total."""

    retries: int = 4
    base_delay: float = 0.3  # seconds
    max_delay: float = 3.0  # seconds
    jitter: float = 0.2  # up to 20% of the backoff, added
    should_retry: Callable[[BaseException], bool] = is_retryable

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-indexed), with jitter."""
        backoff = min(self.max_delay, self.base_delay * (2 ** attempt))
        return backoff + random.uniform(0, backoff * self.jitter)


DEFAULT_RETRY_POLICY = RetryPolicy()


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> T:
    """Call ``fn`` until it succeeds, retrying failures the policy accepts.

    On exhaustion, or on a failure the policy rejects, the original
    exception propagates unchanged.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= policy.retries or not policy.should_retry(e):
                raise
            delay = policy.delay(attempt)
            logger.warning(f"{e}; retrying in {delay:.2f}s (attempt {attempt + 1}/{policy.retries})")
            await sleep(delay)
            attempt += 1


class ConcurrencyLimiter:
    """Runs at most ``limit`` tasks at once; excess callers wait in FIFO order.

    A finishing task hands its slot straight to the oldest waiter, so a
    late arrival can never overtake a queued caller.
    """

    def __init__(self, limit: int):
        if limit <= 0:
            raise ValueError(f"Concurrency limit must be > 0, got {limit}")
        self.limit = limit
        self.active = 0
        self._waiters: collections.deque[asyncio.Future] = collections.deque()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self.active >= self.limit:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                # Slot was handed over just before the cancellation landed
                if waiter.done() and not waiter.cancelled():
                    self._release()
                raise
        else:
            self.active += 1

        try:
            return await fn()
        finally:
            self._release()

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.active -= 1


# =============================================================================
# Data Model
# =============================================================================

DEFAULT_TITLE = "Untitled"
DEFAULT_CATEGORY = "Uncategorized"


@dataclass
class Page:
    """One exported database row, its block tree flattened into ``content``."""

    id: str
    title: str = DEFAULT_TITLE
    category: str = DEFAULT_CATEGORY
    content: str = ""
    created_time: str = ""
    last_edited_time: str = ""
    url: str = ""
    tags: Optional[list[str]] = None


@dataclass
class CategoryGroup:
    category: str
    pages: list[Page] = field(default_factory=list)


@dataclass
class Section:
    """A child page split back out of flattened content."""

    title: str
    content: str
    last_edited_time: Optional[str] = None


class ObjectKind(Enum):
    DATABASE = "database"
    PAGE = "page"
    NOT_FOUND = "not_found"


# =============================================================================
# Property Extraction
# =============================================================================

TITLE_PROPERTIES = ("Title", "Name")
CATEGORY_PROPERTIES = ("Category", "Tags", "Type")
TAG_PROPERTIES = ("Tags", "Tag", "Labels")


def _plain_text(rich_text: Any) -> str:
    if not isinstance(rich_text, list):
        return ""
    return "".join(t.get("plain_text", "") for t in rich_text if isinstance(t, dict))


def _find_property(properties: dict, name: str) -> Optional[dict]:
    """Look up a property by name, exact match first, then case-insensitive."""
    prop = properties.get(name)
    if isinstance(prop, dict):
        return prop
    lowered = name.lower()
    for key, value in properties.items():
        if key.lower() == lowered and isinstance(value, dict):
            return value
    return None


def extract_title(properties: dict, candidates: Iterable[str] = TITLE_PROPERTIES) -> str:
    """Title text of the first candidate property (title type, then rich_text).

    Returns an empty string when no candidate matches.
    """
    for name in candidates:
        prop = _find_property(properties, name)
        if prop is None:
            continue
        if isinstance(prop.get("title"), list):
            return _plain_text(prop["title"])
        if isinstance(prop.get("rich_text"), list):
            return _plain_text(prop["rich_text"])
    return ""


def extract_category(properties: dict, candidates: Iterable[str] = CATEGORY_PROPERTIES) -> str:
    """Select value, else first multi-select value, of the first candidate that has one."""
    for name in candidates:
        prop = _find_property(properties, name)
        if prop is None:
            continue
        select = prop.get("select")
        if isinstance(select, dict) and select.get("name"):
            return select["name"]
        multi = prop.get("multi_select")
        if isinstance(multi, list) and multi and multi[0].get("name"):
            return multi[0]["name"]
    return DEFAULT_CATEGORY


def extract_tags(properties: dict, candidates: Iterable[str] = TAG_PROPERTIES) -> Optional[list[str]]:
    """All multi-select names, or the single select name, of the first candidate that has any."""
    for name in candidates:
        prop = _find_property(properties, name)
        if prop is None:
            continue
        multi = prop.get("multi_select")
        if isinstance(multi, list) and multi:
            return [option.get("name", "") for option in multi]
        select = prop.get("select")
        if isinstance(select, dict) and select.get("name"):
            return [select["name"]]
    return None


def is_export_flagged(properties: dict, property_name: str) -> bool:
    """True only when the named checkbox property exists and is checked."""
    prop = _find_property(properties, property_name)
    return prop is not None and prop.get("checkbox") is True


def get_database_title(database: dict) -> str:
    return _plain_text(database.get("title")) or DEFAULT_TITLE


def get_page_title(page: dict) -> str:
    """Title of a standalone page: the named candidates, then any title-type property."""
    properties = page.get("properties") or {}
    title = extract_title(properties)
    if title:
        return title
    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return _plain_text(prop.get("title")) or DEFAULT_TITLE
    return DEFAULT_TITLE


def schema_category_order(database: dict, property_name: Optional[str] = None) -> list[str]:
    """Declared option order of the category select/multi-select property.

    Returns an empty list when the schema has no such property.
    """
    properties = database.get("properties") or {}
    candidates = (property_name,) if property_name else CATEGORY_PROPERTIES
    for name in candidates:
        prop = _find_property(properties, name)
        if prop is None:
            continue
        for prop_type in ("select", "multi_select"):
            options = (prop.get(prop_type) or {}).get("options")
            if isinstance(options, list):
                return [o["name"] for o in options if isinstance(o, dict) and o.get("name")]
    return []


# =============================================================================
# Block Rendering
# =============================================================================

SUBPAGE_MARKER = "<!--subpage-->"
MAX_CHILD_DEPTH = 10

# Top-level child pages render as level-3 headings: the merger puts the
# page title at level 2 (or 3 under a category heading).
PAGE_HEADING_DEPTH = 3


@dataclass
class Leaf:
    """Already-flattened Markdown for one block (and its non-page children)."""

    text: str


@dataclass
class Subpage:
    """A child_page block: heading plus its own rendered children."""

    title: str
    level: int
    children: list["ContentNode"] = field(default_factory=list)
    marked: bool = False

    def to_markdown(self) -> str:
        heading = f"{'#' * self.level} {self.title}"
        body = serialize_nodes(self.children)
        if body.strip():
            return f"{heading}\n\n{body}"
        return heading


ContentNode = Union[Leaf, Subpage]


def serialize_nodes(nodes: list[ContentNode]) -> str:
    """Flatten rendered nodes to Markdown, blank line between parts.

    Marked subpages are preceded by the SUBPAGE_MARKER line.
    """
    parts: list[str] = []
    for node in nodes:
        if isinstance(node, Subpage):
            if node.marked:
                parts.append(SUBPAGE_MARKER)
            parts.append(node.to_markdown())
        else:
            parts.append(node.text)
    return "\n\n".join(parts)


def quote_text(text: str) -> str:
    """Prefix every line with '> ' (blank lines become a bare '>')."""
    return "\n".join(f"> {line}" if line.strip() else ">" for line in text.split("\n"))


def extract_block_text(block: dict) -> str:
    """Markdown for a single block, without its children."""
    block_type = block.get("type", "")
    data = block.get(block_type)
    if not isinstance(data, dict):
        return ""
    text = _plain_text(data.get("rich_text"))

    if block_type in ("heading_1", "heading_2", "heading_3"):
        return f"{'#' * int(block_type[-1])} {text}"
    if block_type in ("paragraph", "quote", "callout"):
        return text
    if block_type == "bulleted_list_item":
        return f"- {text}"
    if block_type == "numbered_list_item":
        return f"1. {text}"
    if block_type == "code":
        return f"```{data.get('language', '')}\n{text}\n```"
    if block_type == "divider":
        return "---"
    return ""


class BlockTreeRenderer:
    """Renders a block's children, recursively, into Markdown.

    Child pages become headings (clamped to levels 1-6); the ones found
    directly under the rendered block are preceded by SUBPAGE_MARKER so
    split_sections can cut them back out. Descent stops past
    ``max_depth`` nested levels.
    """

    def __init__(
        self,
        client: NotionClient,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        max_depth: int = MAX_CHILD_DEPTH,
    ):
        self.client = client
        self.retry_policy = retry_policy
        self.max_depth = max_depth

    async def list_children(self, block_id: str) -> list[dict]:
        """All children of a block, in order, across every result page."""
        blocks: list[dict] = []
        cursor = None
        while True:
            result = await retry_async(
                lambda: self.client.list_block_children(block_id, cursor=cursor),
                self.retry_policy,
            )
            blocks.extend(result.get("results", []))
            cursor = result.get("next_cursor")
            if not result.get("has_more") or not cursor:
                break
        return blocks

    async def render(self, block_id: str, heading_depth: int = PAGE_HEADING_DEPTH, child_depth: int = 0) -> str:
        return serialize_nodes(await self.render_nodes(block_id, heading_depth, child_depth))

    async def render_nodes(self, block_id: str, heading_depth: int, child_depth: int) -> list[ContentNode]:
        nodes: list[ContentNode] = []
        for block in await self.list_children(block_id):
            block_type = block.get("type", "")

            if block_type == "child_page":
                title = (block.get("child_page") or {}).get("title") or DEFAULT_TITLE
                children: list[ContentNode] = []
                try:
                    children = await self._descend(block["id"], heading_depth + 1, child_depth + 1)
                except Exception as e:
                    logger.warning(f"Failed to render child page {block.get('id')}: {title} ({e})")
                nodes.append(Subpage(
                    title=title,
                    level=min(6, max(1, heading_depth)),
                    children=children,
                    marked=child_depth == 0,
                ))
                continue

            text = extract_block_text(block)
            if block.get("has_children"):
                try:
                    child_text = serialize_nodes(
                        await self._descend(block["id"], heading_depth, child_depth + 1)
                    )
                except Exception as e:
                    logger.warning(f"Failed to render children of block {block.get('id')}: {e}")
                    child_text = ""
                text = "\n\n".join(part for part in (text, child_text) if part)

            if block_type == "quote" and text:
                text = quote_text(text)
            if text:
                nodes.append(Leaf(text))

        return nodes

    async def _descend(self, block_id: str, heading_depth: int, child_depth: int) -> list[ContentNode]:
        if child_depth > self.max_depth:
            logger.debug(f"Depth limit {self.max_depth} reached, not rendering {block_id}")
            return []
        return await self.render_nodes(block_id, heading_depth, child_depth)


# =============================================================================
# Content Splitting
# =============================================================================

_HEADING_LINE = re.compile(r'^(#{1,6})\s+(.+?)\s*$')


def _drop_separator(lines: list[str]) -> None:
    """Remove the one empty line a "\\n\\n" join leaves before a marker."""
    if lines and lines[-1] == "":
        lines.pop()


def split_sections(content: str) -> tuple[str, list[Section]]:
    """Split flattened content into its main text and marked subpage sections.

    A section runs from the heading after a marker up to the next marker
    (or the end). Markers inside ``` fences are plain text. Only the blank
    line separating a part from the following marker is dropped; anything
    else, trailing newlines of the last part included, is kept verbatim.
    """
    if not content:
        return "", []

    lines = content.split("\n")
    main_lines: list[str] = []
    sections: list[tuple[str, list[str]]] = []
    target = main_lines
    in_fence = False

    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = line.strip()

        if stripped.startswith("```"):
            in_fence = not in_fence
        elif not in_fence and stripped == SUBPAGE_MARKER:
            j = i + 1
            while j < len(lines) and not lines[j].strip():
                j += 1
            match = _HEADING_LINE.match(lines[j]) if j < len(lines) else None
            if match:
                _drop_separator(target)
                target = []
                sections.append((match.group(2).strip(), target))
                i = j
                continue

        target.append(line)
        i += 1

    return "\n".join(main_lines), [Section(title, "\n".join(body)) for title, body in sections]


def join_sections(main: str, sections: list[Section]) -> str:
    """Inverse of split_sections: main text, then each section behind a marker."""
    parts = [main] if main else []
    for section in sections:
        parts.append(SUBPAGE_MARKER)
        parts.append(section.content)
    return "\n\n".join(parts)


def subpage_titles(content: str) -> list[str]:
    return [section.title for section in split_sections(content)[1]]


# =============================================================================
# Version Resolution
# =============================================================================

# Trailing version token: separators, then keyword and dotted integers,
# bare or inside a matching () or [] pair. Anchored to the end of the title.
_version_number = P.seq(
    P.regex(r'version|ver|v', flags=re.IGNORECASE),
    P.string(' ').optional(),
    P.regex(r'\d+').map(int).sep_by(P.string('.'), min=1),
).map(lambda parts: tuple(parts[2]))

_version_token = P.regex(r'[\s\-_]*') >> (
    P.string('(') >> _version_number << P.string(')')
    | P.string('[') >> _version_number << P.string(']')
    | _version_number
) << P.regex(r'\s*') << P.eof


def _is_version_separator(char: str) -> bool:
    return char.isspace() or char in "-_(["


def normalize_title(title: str) -> str:
    """Lower-case, whitespace runs collapsed to one space, trimmed."""
    return " ".join(title.lower().split())


def parse_version(title: str) -> tuple[str, Optional[tuple[int, ...]]]:
    """Split a title into (base title, version vector).

    "Plan V 3.2" -> ("Plan", (3, 2)); "Plan (v2)" -> ("Plan", (2,)).
    The keyword must start the title or follow a separator, so "Dev2"
    is unversioned, and a bracket must be closed by its partner: "Plan v2]"
    has no version. Titles without a token return (title, None).
    """
    for start in range(len(title)):
        if start and not _is_version_separator(title[start]):
            continue
        try:
            version = _version_token.parse(title[start:])
        except P.ParseError:
            continue
        return title[:start], version
    return title, None


@dataclass(frozen=True)
class VersionCandidate:
    title: str
    base_title: str
    version: Optional[tuple[int, ...]]
    last_edited_time: Optional[str] = None

    @classmethod
    def from_title(cls, title: str, last_edited_time: Optional[str] = None) -> "VersionCandidate":
        base, version = parse_version(title)
        return cls(title, normalize_title(base), version, last_edited_time)


def _parse_timestamp(value: Optional[str]) -> datetime:
    """ISO-8601 timestamp as an aware datetime; unknown values sort first."""
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compare_versions(a: tuple[int, ...], b: tuple[int, ...]) -> int:
    """-1, 0 or 1; missing trailing components count as 0."""
    width = max(len(a), len(b))
    left = a + (0,) * (width - len(a))
    right = b + (0,) * (width - len(b))
    return (left > right) - (left < right)


def _is_newer(candidate: VersionCandidate, best: VersionCandidate) -> bool:
    order = compare_versions(candidate.version, best.version)
    if order:
        return order > 0
    return _parse_timestamp(candidate.last_edited_time) > _parse_timestamp(best.last_edited_time)


def resolve_latest(
    items: list[T],
    title_of: Callable[[T], str] = lambda item: item.title,
    edited_of: Callable[[T], Optional[str]] = lambda item: getattr(item, "last_edited_time", None),
) -> list[T]:
    """Keep one item per normalized base title: the highest version.

    Groups without any versioned title are kept whole. In a group that has
    versions, the greatest version wins (later edit time breaks ties) and
    every other member, unversioned ones included, is dropped. Survivors
    keep their input order.
    """
    candidates = [VersionCandidate.from_title(title_of(item), edited_of(item)) for item in items]
    groups: dict[str, list[int]] = {}
    for index, candidate in enumerate(candidates):
        groups.setdefault(candidate.base_title, []).append(index)

    keep: set[int] = set()
    for indices in groups.values():
        versioned = [i for i in indices if candidates[i].version is not None]
        if not versioned:
            keep.update(indices)
            continue
        best = versioned[0]
        for i in versioned[1:]:
            if _is_newer(candidates[i], candidates[best]):
                best = i
        keep.add(best)

    dropped = len(items) - len(keep)
    if dropped:
        logger.debug(f"Dropped {dropped} superseded versions")
    return [item for index, item in enumerate(items) if index in keep]


def latest_section_content(content: str) -> str:
    """Content with superseded subpage versions removed; unchanged otherwise."""
    main, sections = split_sections(content)
    kept = resolve_latest(sections)
    if len(kept) == len(sections):
        return content
    return join_sections(main, kept)


# =============================================================================
# Category Grouping
# =============================================================================

CATEGORY_ORDERS = ("alphabetical", "first_seen", "schema")


def group_by_category(
    pages: list[Page],
    explicit_order: Optional[list[str]] = None,
    ordering: str = "alphabetical",
) -> list[CategoryGroup]:
    """Partition pages by category, keeping each group's page order.

    An explicit order (e.g. a select property's declared options) wins:
    listed categories first, the rest after in first-seen order. Without
    one, "alphabetical" sorts by name and anything else keeps first-seen
    order.
    """
    if ordering not in CATEGORY_ORDERS:
        raise ValueError(f"Unknown category ordering: {ordering}")

    groups: dict[str, CategoryGroup] = {}
    for page in pages:
        category = page.category or DEFAULT_CATEGORY
        groups.setdefault(category, CategoryGroup(category)).pages.append(page)

    if explicit_order is not None:
        ordered = []
        for name in dict.fromkeys(explicit_order):
            if name in groups:
                ordered.append(groups[name])
        listed = set(explicit_order)
        ordered.extend(group for name, group in groups.items() if name not in listed)
    elif ordering == "alphabetical":
        ordered = sorted(groups.values(), key=lambda group: group.category)
    else:
        ordered = list(groups.values())

    logger.info(f"Grouped {len(pages)} pages into {len(ordered)} categories")
    return ordered


def filter_empty_pages(pages: list[Page]) -> list[Page]:
    filtered = [page for page in pages if page.content.strip()]
    removed = len(pages) - len(filtered)
    if removed:
        logger.warning(f"Filtered out {removed} empty pages")
    return filtered


# =============================================================================
# Configuration
# =============================================================================

CONFIG_FILENAME = ".notion-bundler.json"

# Legacy camelCase keys whose snake_case form differs from the field name
_OPTION_ALIASES = {
    "export_flag_property_name": "export_flag_property",
    "order_by_property_name": "order_by_property",
    "category_property_name": "category_property",
}


def _snake_case(key: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


@dataclass
class ExportOptions:
    output_dir: str = "./output"
    merge_all: bool = True
    merge_by_category: bool = False
    folder_structure: bool = False
    include_metadata: bool = True
    include_toc: bool = True
    keep_latest_versions: bool = True
    skip_empty: bool = True
    export_flag_property: Optional[str] = "Export"
    order_by_property: Optional[str] = None
    order_direction: str = "ascending"
    category_order: str = "alphabetical"
    category_property: Optional[str] = None
    concurrency: int = 5
    output_name: Optional[str] = None
    prefix_with_timestamp: bool = True
    prefix_with_database_name: bool = True

    def __post_init__(self):
        if self.order_direction not in ("ascending", "descending"):
            raise ConfigError(f"order_direction must be ascending or descending, got {self.order_direction!r}")
        if self.category_order not in CATEGORY_ORDERS:
            raise ConfigError(f"category_order must be one of {', '.join(CATEGORY_ORDERS)}, got {self.category_order!r}")
        if isinstance(self.concurrency, bool) or not isinstance(self.concurrency, int) or self.concurrency <= 0:
            raise ConfigError(f"concurrency must be a positive integer, got {self.concurrency!r}")

    @classmethod
    def from_mapping(cls, data: dict) -> "ExportOptions":
        """Build options from a config mapping (camelCase or snake_case keys)."""
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _snake_case(key)
            name = _OPTION_ALIASES.get(name, name)
            if name not in known:
                logger.warning(f"Ignoring unknown export option: {key}")
                continue
            kwargs[name] = value
        return cls(**kwargs)

    def merged(self, **overrides: Any) -> "ExportOptions":
        """Copy with every non-None override applied."""
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass
class DatabaseEntry:
    alias: str
    notion_id: str
    name: Optional[str] = None
    description: Optional[str] = None


@dataclass
class BundlerConfig:
    api_key: Optional[str] = None
    databases: list[DatabaseEntry] = field(default_factory=list)
    export: ExportOptions = field(default_factory=ExportOptions)


def config_path(path: Optional[Union[str, Path]] = None) -> Path:
    return Path(path).expanduser() if path is not None else Path.cwd() / CONFIG_FILENAME


def read_config_data(path: Path) -> dict:
    """Raw config file contents, the legacy form already converted.

    The legacy single-database form {"notion": {"apiKey", "databaseId"}}
    becomes {"apiKey", "databases": [one entry aliased "default"]}.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    if not isinstance(data.get("databases"), list) and isinstance(data.get("notion"), dict):
        legacy = data.pop("notion")
        data["apiKey"] = legacy.get("apiKey")
        data["databases"] = []
        if legacy.get("databaseId"):
            data["databases"].append({
                "alias": "default",
                "notionId": legacy["databaseId"],
                "name": "Default Database",
            })
    return data


def save_config_data(data: dict, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    logger.info(f"Configuration saved to {path}")


def load_config(path: Optional[Union[str, Path]] = None) -> BundlerConfig:
    """Load the JSON config file; a missing default file means defaults.

    An explicitly named file must exist.
    """
    source = config_path(path)
    if not source.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {source}")
        logger.debug("No configuration file found")
        return BundlerConfig()

    data = read_config_data(source)
    databases = []
    for entry in data.get("databases") or []:
        if not isinstance(entry, dict) or not entry.get("alias") or not entry.get("notionId"):
            raise ConfigError(f"Database entries need 'alias' and 'notionId': {entry!r}")
        databases.append(DatabaseEntry(
            alias=entry["alias"],
            notion_id=entry["notionId"],
            name=entry.get("name"),
            description=entry.get("description"),
        ))

    export = ExportOptions.from_mapping(data.get("export") or {})
    logger.debug(f"Loaded configuration from {source}")
    return BundlerConfig(api_key=data.get("apiKey"), databases=databases, export=export)


def _existing_config_data(path: Path) -> dict:
    if not path.exists():
        raise ConfigError(f"No configuration found at {path}. Run `notion-bundler init` first.")
    return read_config_data(path)


def add_database(
    path: Path,
    alias: str,
    notion_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> bool:
    """Add a database entry, or replace the one with the same alias.

    Returns True when an existing entry was replaced.
    """
    data = _existing_config_data(path)
    entry = {"alias": alias, "notionId": resolve_object_id(notion_id)}
    if name:
        entry["name"] = name
    if description:
        entry["description"] = description

    databases = data.setdefault("databases", [])
    for index, existing in enumerate(databases):
        if existing.get("alias") == alias:
            databases[index] = entry
            logger.info(f'Updated database "{alias}"')
            save_config_data(data, path)
            return True
    databases.append(entry)
    logger.info(f'Added database "{alias}"')
    save_config_data(data, path)
    return False


def remove_database(path: Path, alias: str) -> None:
    data = _existing_config_data(path)
    databases = data.get("databases") or []
    remaining = [entry for entry in databases if entry.get("alias") != alias]
    if len(remaining) == len(databases):
        raise ConfigError(f'Database "{alias}" not found')
    data["databases"] = remaining
    save_config_data(data, path)
    logger.info(f'Removed database "{alias}"')


def set_api_key(path: Path, api_key: str) -> None:
    """Store the default API key, creating the config file if needed."""
    data = read_config_data(path) if path.exists() else {"databases": []}
    data["apiKey"] = api_key
    save_config_data(data, path)


SAMPLE_ENV = """\
# Read by notion-bundler on startup; real environment variables win.
# NOTION_API_KEY=secret_xxx
# NOTION_DATABASE_ID=
"""


def init_config(path: Path) -> list[Path]:
    """Write a sample config file and a .env beside it; existing files are kept.

    Returns the files created.
    """
    sample = {
        "apiKey": "your-notion-api-key",
        "databases": [
            {"alias": "notes", "notionId": "your-database-id", "name": "My Notes"},
        ],
        "export": dataclasses.asdict(ExportOptions()),
    }
    created = []
    if path.exists():
        logger.warning(f"{path} already exists, leaving it unchanged")
    else:
        save_config_data(sample, path)
        created.append(path)

    env_path = path.parent / ".env"
    if env_path.exists():
        logger.warning(f"{env_path} already exists, leaving it unchanged")
    else:
        env_path.parent.mkdir(parents=True, exist_ok=True)
        env_path.write_text(SAMPLE_ENV, encoding="utf-8")
        created.append(env_path)
    return created


def load_env_file(path: Optional[Path] = None) -> bool:
    """Load NOTION_* variables from a .env file without overriding the environment."""
    return load_dotenv(path or Path.cwd() / ".env", override=False)


def resolve_token(
    config: BundlerConfig,
    api_key: Optional[str] = None,
    token_file: Optional[str] = None,
) -> str:
    """Token precedence: --api-key, --token-file, NOTION_API_KEY, config file."""
    if api_key:
        return api_key
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            raise ConfigError(f"Token file not found: {token_path}")
        token = token_path.read_text().strip()
        if not token:
            raise ConfigError(f"Token file is empty: {token_path}")
        return token
    token = os.environ.get("NOTION_API_KEY") or config.api_key
    if not token:
        raise ConfigError(_error("NO_TOKEN", "Notion API key is required", hint=HINTS["invalid_token"]))
    return token


def resolve_database(config: BundlerConfig, selector: Optional[str] = None) -> str:
    """Database precedence: selector (alias or id/URL), NOTION_DATABASE_ID, first config entry."""
    selector = selector or os.environ.get("NOTION_DATABASE_ID")
    if selector:
        for entry in config.databases:
            if entry.alias == selector:
                return resolve_object_id(entry.notion_id)
        return resolve_object_id(selector)
    if config.databases:
        return resolve_object_id(config.databases[0].notion_id)
    raise ConfigError(_error("NO_DATABASE", "Notion database ID is required", hint=HINTS["no_database"]))


# =============================================================================
# Export Session (type probing + fetch coordination)
# =============================================================================


@dataclass
class Bundle:
    """Everything the writers need: display name, kept pages, ordered groups."""

    name: str
    pages: list[Page]
    groups: list[CategoryGroup]


class ExportSession:
    """State for one export run.

    Caches each probed object's kind (and the object itself) and the
    schema category order; both are computed once and never refreshed.
    """

    def __init__(
        self,
        client: NotionClient,
        options: Optional[ExportOptions] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        self.client = client
        self.options = options or ExportOptions()
        self.retry_policy = retry_policy
        self.limiter = ConcurrencyLimiter(self.options.concurrency)
        self.renderer = BlockTreeRenderer(client, retry_policy)
        self.kinds: dict[str, ObjectKind] = {}
        self.objects: dict[str, dict] = {}
        self._category_order: Optional[list[str]] = None

    async def _call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await retry_async(lambda: fn(*args, **kwargs), self.retry_policy)

    async def resolve(self, object_id: str) -> ObjectKind:
        """Probe as a database, then as a page. Auth failures abort the probe."""
        if object_id in self.kinds:
            return self.kinds[object_id]

        kind = ObjectKind.NOT_FOUND
        try:
            self.objects[object_id] = await self._call(self.client.retrieve_database, object_id)
            kind = ObjectKind.DATABASE
        except NotionAPIError as e:
            if not _is_not_found(e):
                raise
            try:
                self.objects[object_id] = await self._call(self.client.retrieve_page, object_id)
                kind = ObjectKind.PAGE
            except NotionAPIError as e2:
                if not _is_not_found(e2):
                    raise

        logger.debug(f"Resolved {object_id} as {kind.value}")
        self.kinds[object_id] = kind
        return kind

    async def fetch_all(
        self,
        database_id: str,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> list[Page]:
        """Fetch and render every (export-flagged) row, in query order.

        Rows of one result page are processed concurrently under the
        limiter but collected positionally. A row that fails is logged
        and dropped; a failed page query aborts the whole fetch.
        """
        flag = self.options.export_flag_property
        sorts = None
        if self.options.order_by_property:
            sorts = [{"property": self.options.order_by_property, "direction": self.options.order_direction}]

        pages: list[Page] = []
        cursor = None
        has_more = True
        logger.info("Fetching pages from Notion database...")

        while has_more:
            response = await self._call(self.client.query_database, database_id, cursor=cursor, sorts=sorts)
            batch = [item for item in response.get("results", []) if "properties" in item]
            if flag:
                batch = [item for item in batch if is_export_flagged(item["properties"], flag)]

            processed = await asyncio.gather(*(
                self.limiter.run(lambda item=item: self.process_page(item))
                for item in batch
            ))
            pages.extend(page for page in processed if page is not None)

            cursor = response.get("next_cursor")
            has_more = bool(response.get("has_more"))
            if has_more and not cursor:
                logger.warning("Query reported more results without a cursor; stopping")
                has_more = False

            logger.info(f"Fetched {len(pages)} pages so far...")
            if on_progress:
                on_progress(len(pages))

        logger.info(f"Successfully fetched {len(pages)} pages")
        return pages

    async def process_page(self, raw: dict) -> Optional[Page]:
        """Extract fields and render content; None (logged) on any failure."""
        try:
            properties = raw.get("properties") or {}
            content = await self.renderer.render(raw["id"], PAGE_HEADING_DEPTH, 0)
            return Page(
                id=raw["id"],
                title=extract_title(properties) or DEFAULT_TITLE,
                category=extract_category(properties),
                tags=extract_tags(properties),
                content=content,
                created_time=raw.get("created_time", ""),
                last_edited_time=raw.get("last_edited_time", ""),
                url=raw.get("url", ""),
            )
        except Exception as e:
            logger.warning(f"Failed to process page {raw.get('id')}: {e}")
            return None

    async def category_order(self, database_id: str) -> list[str]:
        if self._category_order is None:
            database = self.objects.get(database_id)
            if database is None:
                database = await self._call(self.client.retrieve_database, database_id)
            self._category_order = schema_category_order(database, self.options.category_property)
        return self._category_order


async def build_bundle(
    session: ExportSession,
    object_id: str,
    category: Optional[str] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> Bundle:
    """Resolve, fetch, filter, version-resolve and group one database or page."""
    kind = await session.resolve(object_id)
    if kind is ObjectKind.NOT_FOUND:
        raise NotFoundError(
            _error("REF_GONE", "Object not found", hint=HINTS["ref_gone"], ref=object_id),
            status=404,
            code="object_not_found",
        )

    options = session.options
    if kind is ObjectKind.DATABASE:
        pages = await session.fetch_all(object_id, on_progress=on_progress)
        name = get_database_title(session.objects[object_id])
    else:
        raw = session.objects[object_id]
        page = await session.process_page(raw)
        pages = [page] if page else []
        name = get_page_title(raw)
        if page and page.title == DEFAULT_TITLE:
            page.title = name

    if options.skip_empty:
        pages = filter_empty_pages(pages)
    if category:
        pages = [page for page in pages if page.category == category]
    if options.keep_latest_versions:
        pages = resolve_latest(pages)

    explicit_order = None
    if options.category_order == "schema" and kind is ObjectKind.DATABASE:
        explicit_order = await session.category_order(object_id)
    groups = group_by_category(pages, explicit_order=explicit_order, ordering=options.category_order)
    return Bundle(name=name, pages=pages, groups=groups)


# =============================================================================
# Markdown Export
# =============================================================================


def sanitize_filename(name: str) -> str:
    name = re.sub(r'[<>:"/\\|?*]', '-', name)
    name = re.sub(r'\s+', '_', name)
    name = re.sub(r'-+', '-', name)
    name = re.sub(r'_+', '_', name)
    return name.strip()


def create_anchor(text: str) -> str:
    anchor = re.sub(r'[^\w\s-]', '', text.lower())
    anchor = re.sub(r'\s+', '-', anchor)
    return re.sub(r'-+', '-', anchor).strip()


def _format_timestamp(value: str) -> str:
    if not value:
        return ""
    parsed = _parse_timestamp(value)
    if parsed.year == 1:
        return value
    return parsed.strftime("%Y-%m-%d %H:%M UTC")


class MarkdownMerger:
    """Writes a Bundle as merged Markdown files and/or a folder tree."""

    def __init__(self, options: ExportOptions):
        self.options = options

    def page_content(self, page: Page) -> str:
        if self.options.keep_latest_versions:
            return latest_section_content(page.content)
        return page.content

    def page_markdown(self, page: Page, heading_level: int = 2, content: Optional[str] = None) -> str:
        lines = [f"{'#' * heading_level} {page.title}", ""]
        if self.options.include_metadata:
            lines.append("> **Metadata**")
            lines.append(f"> - Created: {_format_timestamp(page.created_time)}")
            lines.append(f"> - Last Edited: {_format_timestamp(page.last_edited_time)}")
            if page.tags:
                lines.append(f"> - Tags: {', '.join(page.tags)}")
            lines.append(f"> - [View in Notion]({page.url})")
            lines.append("")
        lines.append(self.page_content(page) if content is None else content)
        return "\n".join(lines)

    def _toc_entries(self, page: Page, indent: str) -> list[str]:
        lines = [f"{indent}- [{page.title}](#{create_anchor(page.title)})"]
        for title in subpage_titles(self.page_content(page)):
            lines.append(f"{indent}  - [{title}](#{create_anchor(title)})")
        return lines

    def category_markdown(self, group: CategoryGroup) -> str:
        lines = [f"# {group.category}", ""]
        if self.options.include_toc:
            lines.extend(["## Table of Contents", ""])
            for page in group.pages:
                lines.extend(self._toc_entries(page, ""))
            lines.extend(["", "---", ""])
        for page in group.pages:
            lines.extend([self.page_markdown(page, 2), "", "---", ""])
        return "\n".join(lines)

    def all_pages_markdown(self, groups: list[CategoryGroup], title: str = "All Notes") -> str:
        lines = [f"# {title}", ""]
        if self.options.include_toc:
            lines.extend(["## Table of Contents", ""])
            for group in groups:
                lines.append(f"### [{group.category}](#{create_anchor(group.category)})")
                for page in group.pages:
                    lines.extend(self._toc_entries(page, "  "))
                lines.append("")
            lines.extend(["---", ""])
        for group in groups:
            lines.extend([f"## {group.category}", ""])
            for page in group.pages:
                lines.extend([self.page_markdown(page, 3), "", "---", ""])
        return "\n".join(lines)

    def _stem(self, name: str, database_name: str, now: datetime) -> str:
        parts = []
        if self.options.prefix_with_timestamp:
            parts.append(now.strftime("%Y%m%d-%H%M%S"))
        if self.options.prefix_with_database_name and database_name:
            parts.append(sanitize_filename(database_name))
        parts.append(sanitize_filename(name))
        return "_".join(parts)

    def _subpage_count(self, pages: list[Page]) -> int:
        return sum(len(subpage_titles(self.page_content(page))) for page in pages)

    def _write(self, path: Path, content: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def write(self, bundle: Bundle, now: Optional[datetime] = None) -> list[Path]:
        """Write every enabled output mode; returns the files written."""
        now = now or datetime.now()
        root = Path(self.options.output_dir)
        written: list[Path] = []

        if self.options.merge_all:
            stem = self._stem(self.options.output_name or "all_notes", bundle.name, now)
            path = self._write(root / f"{stem}.md", self.all_pages_markdown(bundle.groups))
            written.append(path)
            self._log_created(path, bundle.pages)

        if self.options.merge_by_category:
            for group in bundle.groups:
                stem = self._stem(group.category, bundle.name, now)
                path = self._write(root / f"{stem}.md", self.category_markdown(group))
                written.append(path)
                self._log_created(path, group.pages)

        if self.options.folder_structure:
            written.extend(self.write_folders(bundle.groups, root))

        return written

    def _log_created(self, path: Path, pages: list[Page]) -> None:
        subpages = self._subpage_count(pages)
        note = f" (+{subpages} subpages)" if subpages else ""
        logger.info(f"Created {path.name} with {len(pages)} pages{note}")

    def write_folders(self, groups: list[CategoryGroup], root: Path) -> list[Path]:
        """One directory per category; pages with subpages get their own directory.

        Such a page directory holds 00_<page>.md (the main text) and one
        NN_<subpage>.md per kept subpage section.
        """
        written: list[Path] = []
        for group in groups:
            category_dir = root / sanitize_filename(group.category)
            for page in group.pages:
                name = sanitize_filename(page.title)
                main, sections = split_sections(self.page_content(page))
                if not sections:
                    written.append(self._write(category_dir / f"{name}.md", self.page_markdown(page, 1)))
                    continue
                page_dir = category_dir / name
                written.append(self._write(page_dir / f"00_{name}.md", self.page_markdown(page, 1, content=main)))
                for index, section in enumerate(sections, 1):
                    section_path = page_dir / f"{index:02d}_{sanitize_filename(section.title)}.md"
                    written.append(self._write(section_path, section.content))
        logger.info(f"Wrote {len(written)} files under {root}")
        return written


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("notion-bundler", host="127.0.0.1", port=2053)

# Set by main() before the server starts
_server_config: Optional[BundlerConfig] = None
_server_token: Optional[str] = None


async def _bundle_for_tool(database: str, category: Optional[str] = None) -> Bundle:
    if _server_config is None or _server_token is None:
        raise ConfigError("Server not configured. Start it with `notion-bundler serve`.")
    object_id = resolve_database(_server_config, database or None)
    async with NotionClient(_server_token) as client:
        session = ExportSession(client, _server_config.export)
        return await build_bundle(session, object_id, category=category)


@mcp.tool()
async def bundle_export(database: str = "", category: str = "") -> str:
    """Export a Notion database (or page) as one merged Markdown document.

    Args:
        database: Database alias from the config file, UUID or Notion URL.
            Empty means the configured default.
        category: Only include pages of this category (optional).

    Returns:
        Markdown: categories as level-2 headings, pages at level 3, with
        superseded page versions removed.
    """
    try:
        bundle = await _bundle_for_tool(database, category or None)
    except AuthError as e:
        return _error("INVALID_TOKEN", str(e), hint=HINTS["invalid_token"])
    except NotionBundlerError as e:
        return _error(type(e).__name__, str(e))
    if not bundle.pages:
        return _error("EMPTY", "No pages to export", ref=database or None)
    return MarkdownMerger(_server_config.export).all_pages_markdown(bundle.groups, title=bundle.name)


@mcp.tool()
async def bundle_categories(database: str = "") -> str:
    """List the categories of a Notion database, one per line.

    Args:
        database: Database alias from the config file, UUID or Notion URL.
            Empty means the configured default.
    """
    try:
        bundle = await _bundle_for_tool(database)
    except AuthError as e:
        return _error("INVALID_TOKEN", str(e), hint=HINTS["invalid_token"])
    except NotionBundlerError as e:
        return _error(type(e).__name__, str(e))
    return "\n".join(sorted(group.category for group in bundle.groups))


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    return JSONResponse({
        "status": "ok",
        "token_loaded": _server_token is not None,
        "databases": [entry.alias for entry in (_server_config.databases if _server_config else [])],
    })


# =============================================================================
# Main Entry Point
# =============================================================================


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notion-bundler",
        description="Download and merge Notion database content into organized Markdown files",
    )
    parser.add_argument("-c", "--config", help=f"Path to configuration file (default: ./{CONFIG_FILENAME})")
    parser.add_argument("-k", "--api-key", help="Notion API key")
    parser.add_argument("--token-file", help="Path to file containing Notion API token")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export = subparsers.add_parser("export", help="Export Notion database content")
    export.add_argument("category", nargs="?", help="Only export pages belonging to this category")
    export.add_argument("-d", "--database", help="Database alias, ID or URL (or a page ID/URL)")
    export.add_argument("-o", "--output", dest="output_dir", help="Output directory")
    export.add_argument("--output-name", help="Base name of the merged file (default: all_notes)")
    bool_flag = argparse.BooleanOptionalAction
    export.add_argument("--merge-all", action=bool_flag, default=None, help="Merge all pages into one file")
    export.add_argument("--merge-by-category", action=bool_flag, default=None, help="One file per category")
    export.add_argument("--folder-structure", action=bool_flag, default=None,
                        help="Write a category/page folder tree, one file per subpage")
    export.add_argument("--include-metadata", action=bool_flag, default=None, help="Include page metadata")
    export.add_argument("--include-toc", action=bool_flag, default=None, help="Include table of contents")
    export.add_argument("--keep-latest-versions", action=bool_flag, default=None,
                        help="Keep only the latest version of versioned page/subpage titles")
    export.add_argument("--skip-empty", action=bool_flag, default=None, help="Drop pages without content")
    export.add_argument("--timestamp-prefix", dest="prefix_with_timestamp", action=bool_flag, default=None,
                        help="Prefix output files with a timestamp")
    export.add_argument("--database-prefix", dest="prefix_with_database_name", action=bool_flag, default=None,
                        help="Prefix output files with the database name")
    export.add_argument("--export-flag", dest="export_flag_property",
                        help="Checkbox property gating export ('' to export every row)")
    export.add_argument("--order-by", dest="order_by_property", help="Property to sort the query by")
    export.add_argument("--order-direction", choices=("ascending", "descending"))
    export.add_argument("--category-order", choices=CATEGORY_ORDERS)
    export.add_argument("--concurrency", type=int, help="Pages processed in parallel (default 5)")

    categories = subparsers.add_parser("categories", help="List all categories found in the database")
    categories.add_argument("-d", "--database", help="Database alias, ID or URL")

    serve = subparsers.add_parser("serve", help="Run as an MCP server")
    serve.add_argument("--http", action="store_true",
                       help="Run as HTTP server on localhost:2053 instead of stdio")

    subparsers.add_parser("init", help="Create a sample configuration file and .env")

    set_key = subparsers.add_parser("set-key", help="Store the default Notion API key in the config file")
    set_key.add_argument("key", help="Notion integration token")

    databases = subparsers.add_parser("databases", help="Manage configured databases")
    db_commands = databases.add_subparsers(dest="db_command", required=True)
    db_add = db_commands.add_parser("add", help="Add or update a database alias")
    db_add.add_argument("alias", help="Short name used with -d")
    db_add.add_argument("notion_id", help="Database ID or URL")
    db_add.add_argument("--name", help="Display name")
    db_add.add_argument("--description", help="Free-form description")
    db_remove = db_commands.add_parser("remove", help="Remove a database alias")
    db_remove.add_argument("alias")
    db_commands.add_parser("list", help="List configured databases (the first is the default)")
    return parser


_EXPORT_OVERRIDES = (
    "output_dir", "output_name", "merge_all", "merge_by_category", "folder_structure",
    "include_metadata", "include_toc", "keep_latest_versions", "skip_empty",
    "prefix_with_timestamp", "prefix_with_database_name", "export_flag_property",
    "order_by_property", "order_direction", "category_order", "concurrency",
)


async def _run_export(args: argparse.Namespace, config: BundlerConfig, token: str) -> int:
    overrides = {name: getattr(args, name) for name in _EXPORT_OVERRIDES}
    options = config.export.merged(**overrides)
    object_id = resolve_database(config, args.database)

    async with NotionClient(token) as client:
        session = ExportSession(client, options)
        bundle = await build_bundle(session, object_id, category=args.category)

    if not bundle.pages:
        if args.category:
            logger.warning(f"No pages found for category: {args.category}")
        else:
            logger.warning("No pages found in the database")
        return 0

    files = MarkdownMerger(options).write(bundle)
    logger.info(f"Export complete! {len(files)} files saved to {Path(options.output_dir).resolve()}")
    return 0


async def _run_categories(args: argparse.Namespace, config: BundlerConfig, token: str) -> int:
    object_id = resolve_database(config, args.database)
    async with NotionClient(token) as client:
        bundle = await build_bundle(ExportSession(client, config.export), object_id)
    if not bundle.groups:
        logger.info("No categories found")
        return 0
    print("\n".join(sorted(group.category for group in bundle.groups)))
    return 0


def _run_init(args: argparse.Namespace) -> int:
    created = init_config(config_path(args.config))
    for path in created:
        logger.info(f"Created {path}")
    if created:
        logger.info("Update the configuration with your Notion credentials.")
    return 0


def _run_set_key(args: argparse.Namespace) -> int:
    set_api_key(config_path(args.config), args.key)
    logger.info("Default Notion API key set")
    return 0


def _run_databases(args: argparse.Namespace) -> int:
    path = config_path(args.config)
    if args.db_command == "add":
        add_database(path, args.alias, args.notion_id, name=args.name, description=args.description)
    elif args.db_command == "remove":
        remove_database(path, args.alias)
    else:
        config = load_config(args.config)
        if not config.databases:
            logger.info("No databases configured")
        for index, entry in enumerate(config.databases):
            default = " (default)" if index == 0 else ""
            name = f"  {entry.name}" if entry.name else ""
            print(f"{entry.alias}{default}: {entry.notion_id}{name}")
    return 0


_CONFIG_COMMANDS = {
    "init": _run_init,
    "set-key": _run_set_key,
    "databases": _run_databases,
}


def _serve(args: argparse.Namespace, config: BundlerConfig, token: str) -> None:
    global _server_config, _server_token
    _server_config = config
    _server_token = token

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])
        logger.info("Starting Notion bundler MCP server on http://127.0.0.1:2053")
        uvicorn.run(app, host="127.0.0.1", port=2053, log_level="warning")
    else:
        mcp.run()


def main(argv: Optional[list[str]] = None) -> None:
    """Command-line entry point.

    Usage:
        notion-bundler init
        notion-bundler databases add <alias> <id|url> [--name NAME]
        notion-bundler export [category] -d <alias|id|url>
        notion-bundler categories
        notion-bundler serve [--http]
    """
    args = _build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )
    load_env_file()

    try:
        if args.command in _CONFIG_COMMANDS:
            status = _CONFIG_COMMANDS[args.command](args)
            raise SystemExit(status)
        config = load_config(args.config)
        token = resolve_token(config, args.api_key, args.token_file)
        if args.command == "serve":
            _serve(args, config, token)
            return
        runner = _run_export if args.command == "export" else _run_categories
        status = asyncio.run(runner(args, config, token))
    except NotionBundlerError as e:
        logger.error(f"{args.command.capitalize()} failed: {e}")
        raise SystemExit(1)
    raise SystemExit(status)


if __name__ == "__main__":
    main()
