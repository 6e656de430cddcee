#!/usr/bin/env python3
"""Love Diary: a personal memory journal for the terminal."""

from __future__ import annotations

import asyncio
import base64
import binascii
import html
import io
import json
import math
import mimetypes
import os
import re
import subprocess
import sys
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date as date_cls
from datetime import datetime, timedelta, timezone
from html.parser import HTMLParser
from pathlib import Path
from typing import Callable, Optional, Union
from xml.etree import ElementTree

from loguru import logger
from PIL import Image, ImageDraw, ImageFont
from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.key_binding.bindings.focus import focus_next, focus_previous
from prompt_toolkit.layout.containers import (
    Float, FloatContainer, HSplit, VSplit, Window, WindowAlign,
)
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension as D
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.styles import Style as PtStyle
from prompt_toolkit.widgets import Button, Dialog, Label, TextArea

# ════════════════════════════════════════════════════════════════════════
#  Errors
# ════════════════════════════════════════════════════════════════════════


class DiaryError(Exception):
    """Base class for all diary errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict = {"error": type(self).__name__, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class EntryValidationError(DiaryError):
    """A draft was rejected; nothing was stored."""


class StoreCorruptedError(DiaryError):
    """The persisted collection is not a valid serialization."""


class SnapshotError(DiaryError):
    pass


class SurfaceAllocationError(SnapshotError):
    """The raster surface could not be created."""


class UnsupportedContentError(SnapshotError):
    """The fragment holds content the rasterizer cannot draw."""


class SnapshotLoadError(SnapshotError):
    """The vector container could not be loaded."""


# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════

STORAGE_KEY = "loveDiaryEntries"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Entry:
    """One journal record. Read-only once created."""
    id: int                 # Creation time in epoch milliseconds
    date: str               # Event date, YYYY-MM-DD
    title: str
    content: str            # Serialized markup
    created_at: str         # ISO 8601, set once
    location: str = ""
    event: str = ""
    images: tuple[str, ...] = ()    # data: URIs in selection order

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date,
            "title": self.title,
            "location": self.location,
            "event": self.event,
            "content": self.content,
            "images": list(self.images),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data) -> "Entry":
        if not isinstance(data, dict):
            raise StoreCorruptedError(
                "Entry record is not an object.", {"record": repr(data)[:80]})
        entry_id = data.get("id")
        if not isinstance(entry_id, int) or isinstance(entry_id, bool):
            raise StoreCorruptedError(
                "Entry id must be an integer.", {"id": repr(entry_id)[:40]})
        fields = {}
        for key in ("date", "title", "content", "createdAt"):
            value = data.get(key)
            if not isinstance(value, str):
                raise StoreCorruptedError(
                    f"Entry field '{key}' is missing or not text.",
                    {"id": entry_id, "field": key})
            fields[key] = value
        for key in ("location", "event"):
            value = data.get(key) or ""
            if not isinstance(value, str):
                raise StoreCorruptedError(
                    f"Entry field '{key}' is not text.",
                    {"id": entry_id, "field": key})
            fields[key] = value
        images = data.get("images") or []
        if not isinstance(images, list) or not all(isinstance(i, str) for i in images):
            raise StoreCorruptedError(
                "Entry images must be a list of data URIs.", {"id": entry_id})
        return cls(
            id=entry_id,
            date=fields["date"],
            title=fields["title"],
            content=fields["content"],
            created_at=fields["createdAt"],
            location=fields["location"],
            event=fields["event"],
            images=tuple(images),
        )


ImagePayload = Union[bytes, str, Path]


@dataclass
class EntryDraft:
    """Field values for a new entry, images still raw (bytes or file paths)."""
    date: str
    title: str
    content: str
    location: str = ""
    event: str = ""
    images: list[ImagePayload] = field(default_factory=list)


def validate_draft(draft: EntryDraft) -> None:
    if not draft.content or not draft.content.strip():
        raise EntryValidationError(
            "Write something before saving.", {"field": "content"})
    if not draft.title or not draft.title.strip():
        raise EntryValidationError("A title is required.", {"field": "title"})
    valid_date = bool(draft.date and _ISO_DATE_RE.match(draft.date))
    if valid_date:
        try:
            date_cls.fromisoformat(draft.date)
        except ValueError:
            valid_date = False
    if not valid_date:
        raise EntryValidationError(
            "Date must look like YYYY-MM-DD.", {"field": "date", "value": draft.date})


# ════════════════════════════════════════════════════════════════════════
#  Storage
# ════════════════════════════════════════════════════════════════════════


class LocalStorage:
    """Key-value store: each key is one JSON text file in the data directory."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.exports_dir = data_dir / "exports"
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.exports_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        """Replace the stored value in one step: write a temp file, then rename."""
        fd, tmp = tempfile.mkstemp(
            prefix=f".{key}.", suffix=".tmp", dir=self.data_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self._path(key))
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def quarantine_item(self, key: str) -> Optional[Path]:
        """Move an unreadable value aside and return where it went."""
        path = self._path(key)
        if not path.exists():
            return None
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup = self.data_dir / f"{key}.corrupt-{stamp}.json"
        n = 1
        while backup.exists():
            backup = self.data_dir / f"{key}.corrupt-{stamp}-{n}.json"
            n += 1
        path.rename(backup)
        return backup


# ════════════════════════════════════════════════════════════════════════
#  Entry Store
# ════════════════════════════════════════════════════════════════════════


def _read_payload(payload: ImagePayload) -> tuple[str, bytes]:
    if isinstance(payload, (bytes, bytearray)):
        return "image", bytes(payload)
    path = Path(payload).expanduser()
    return path.name, path.read_bytes()


def _identify_image(name: str, data: bytes) -> tuple[str, tuple[int, int]]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt, size = img.format, img.size
            img.verify()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise EntryValidationError(
            f"Not an image: {name}", {"field": "images", "image": name}) from exc
    mime = Image.MIME.get(fmt or "") or mimetypes.guess_type(name)[0]
    if not mime or not mime.startswith("image/"):
        raise EntryValidationError(
            f"Unsupported image type: {name}", {"field": "images", "image": name})
    return mime, size


def describe_image(payload: ImagePayload) -> tuple[str, str, tuple[int, int]]:
    """(name, MIME type, pixel size) of an image payload."""
    name, data = _read_payload(payload)
    mime, size = _identify_image(name, data)
    return name, mime, size


def image_to_data_uri(payload: ImagePayload) -> str:
    """Encode an image file (or raw bytes) as a ``data:`` URI.

    Payloads Pillow cannot identify raise EntryValidationError.
    """
    name, data = _read_payload(payload)
    mime, _ = _identify_image(name, data)
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def _iso_timestamp(moment: datetime) -> str:
    utc = moment.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _decode_entries(raw: str) -> list[Entry]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StoreCorruptedError(
            f"Stored entries are not valid JSON: {exc.msg}",
            {"line": exc.lineno, "column": exc.colno}) from exc
    except (ValueError, RecursionError) as exc:
        # Oversized integers, nesting deeper than the parser can follow
        raise StoreCorruptedError(
            f"Stored entries cannot be decoded: {type(exc).__name__}") from exc
    if not isinstance(data, list):
        raise StoreCorruptedError("Stored entries are not a list.")
    entries = [Entry.from_dict(item) for item in data]
    seen: set[int] = set()
    for e in entries:
        if e.id in seen:
            raise StoreCorruptedError("Duplicate entry id.", {"id": e.id})
        seen.add(e.id)
    return entries


def _encode_entries(entries: list[Entry]) -> str:
    return json.dumps([e.to_dict() for e in entries], ensure_ascii=False)


class EntryStore:
    """Owns the entry list (newest first) and its mirror in LocalStorage.

    Every mutation writes the whole collection. ``add`` only suspends while
    encoding images, before the list is touched, so two mutations never
    interleave on the event loop.
    """

    def __init__(self, storage: LocalStorage,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: list[Entry] = []
        self.recovered_from: Optional[Path] = None

    def load(self) -> None:
        """Read the persisted collection.

        A value that cannot be decoded is quarantined (renamed next to the
        original) and the store starts empty; ``recovered_from`` then holds
        the backup path.
        """
        try:
            raw = self.storage.get_item(STORAGE_KEY)
            if raw is None:
                self._entries = []
                logger.debug("No stored entries, starting empty")
                return
            self._entries = _decode_entries(raw)
        except (StoreCorruptedError, UnicodeDecodeError) as exc:
            if isinstance(exc, UnicodeDecodeError):
                exc = StoreCorruptedError(
                    "Stored entries are not UTF-8 text.", {"offset": exc.start})
            self._entries = []
            self.recovered_from = self.storage.quarantine_item(STORAGE_KEY)
            logger.warning("Stored entries unreadable {}; moved to {}",
                           exc.to_dict(), self.recovered_from)
            return
        logger.info("Loaded {} entries", len(self._entries))

    def all(self) -> tuple[Entry, ...]:
        return tuple(self._entries)

    def get(self, entry_id) -> Optional[Entry]:
        for e in self._entries:
            if e.id == entry_id:
                return e
        return None

    async def add(self, draft: EntryDraft) -> Entry:
        validate_draft(draft)
        loop = asyncio.get_running_loop()
        try:
            # gather keeps selection order whatever order the reads finish in
            images = await asyncio.gather(*(
                loop.run_in_executor(None, image_to_data_uri, payload)
                for payload in draft.images
            ))
        except OSError as exc:
            raise EntryValidationError(
                f"Could not read image: {exc.filename or exc}",
                {"field": "images"}) from exc

        now = self._clock()
        entry = Entry(
            id=self._next_id(now),
            date=draft.date,
            title=draft.title,
            content=sanitize_markup(draft.content),
            created_at=_iso_timestamp(now),
            location=draft.location or "",
            event=draft.event or "",
            images=tuple(images),
        )
        entries = [entry] + self._entries
        self._save(entries)
        self._entries = entries
        logger.info("Added entry {} ({} images)", entry.id, len(entry.images))
        return entry

    def delete(self, entry_id) -> bool:
        """Remove an entry. Unknown ids are a no-op and nothing is written."""
        remaining = [e for e in self._entries if e.id != entry_id]
        if len(remaining) == len(self._entries):
            return False
        self._save(remaining)
        self._entries = remaining
        logger.info("Deleted entry {}", entry_id)
        return True

    def _next_id(self, now: datetime) -> int:
        candidate = (now.astimezone(timezone.utc) - _EPOCH) // timedelta(milliseconds=1)
        newest = max((e.id for e in self._entries), default=0)
        return candidate if candidate > newest else newest + 1

    def _save(self, entries: list[Entry]) -> None:
        self.storage.set_item(STORAGE_KEY, _encode_entries(entries))


# ════════════════════════════════════════════════════════════════════════
#  Filtering
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class FilterCriteria:
    """Optional per-field constraints; blank values impose none."""
    date: Optional[str] = None
    location: Optional[str] = None
    event: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.date or self.location or self.event)


def _contains(value: str, needle: str) -> bool:
    return bool(value) and needle.lower() in value.lower()


def filter_entries(entries, criteria=None) -> list[Entry]:
    """Entries matching every present criterion, in their original order."""
    if criteria is None:
        criteria = FilterCriteria()
    elif isinstance(criteria, dict):
        criteria = FilterCriteria(**criteria)
    result = list(entries)
    if criteria.date:
        result = [e for e in result if e.date == criteria.date]
    if criteria.location:
        result = [e for e in result if _contains(e.location, criteria.location)]
    if criteria.event:
        result = [e for e in result if _contains(e.event, criteria.event)]
    return result


# ════════════════════════════════════════════════════════════════════════
#  Markup
# ════════════════════════════════════════════════════════════════════════

VOID_TAGS = frozenset({"br", "hr", "img", "input", "wbr"})
BLOCK_TAGS = frozenset({
    "address", "article", "aside", "blockquote", "div", "figcaption",
    "figure", "footer", "h1", "h2", "h3", "h4", "h5", "h6", "header",
    "li", "ol", "p", "pre", "section", "ul",
})
ALLOWED_TAGS = BLOCK_TAGS | frozenset({
    "a", "b", "br", "button", "code", "del", "em", "font", "hr", "i", "img",
    "input", "ins", "label", "mark", "option", "s", "select", "small",
    "span", "strike", "strong", "sub", "sup", "textarea", "u",
})
# Dropped together with everything inside them.
_DROPPED_TAGS = frozenset({
    "script", "style", "iframe", "object", "embed", "frame", "frameset",
    "noscript", "template", "svg", "math", "head", "title", "link", "meta",
    "base",
})
_ALLOWED_ATTRS = frozenset({
    "href", "src", "alt", "title", "class", "type", "checked", "disabled",
    "value", "placeholder",
})
_SAFE_SCHEMES = ("http", "https", "mailto")


def _is_safe_href(value: str) -> bool:
    compact = re.sub(r"[\x00-\x20]", "", value)
    m = re.match(r"([a-zA-Z][a-zA-Z0-9+.\-]*):", compact)
    return not m or m.group(1).lower() in _SAFE_SCHEMES


def _clean_attrs(attrs) -> dict:
    clean = {}
    for name, value in attrs:
        name = name.lower()
        if name.startswith("on") or name not in _ALLOWED_ATTRS:
            continue
        value = "" if value is None else value
        if name == "href" and not _is_safe_href(value):
            continue
        if name == "src" and not value.strip().lower().startswith("data:image/"):
            continue
        clean[name] = value
    return clean


class Element:
    """Minimal document node: a tag, attributes and children (Elements or text)."""

    def __init__(self, tag: str, attrs: Optional[dict] = None,
                 children: Optional[list] = None):
        self.tag = tag
        self.attrs = dict(attrs or {})
        self.children: list = list(children or [])
        self.hidden = False

    def __repr__(self):
        return f"<Element {self.tag} {self.attrs.get('id', '')}>"

    @property
    def classes(self) -> list[str]:
        return self.attrs.get("class", "").split()

    def iter(self):
        yield self
        for child in self.children:
            if isinstance(child, Element):
                yield from child.iter()

    def get_element_by_id(self, element_id: str) -> Optional["Element"]:
        for el in self.iter():
            if el.attrs.get("id") == element_id:
                return el
        return None

    def find_all_by_class(self, name: str) -> list["Element"]:
        return [el for el in self.iter() if name in el.classes]

    def text_content(self) -> str:
        return "".join(
            c.text_content() if isinstance(c, Element) else c
            for c in self.children)

    def outer_html(self) -> str:
        """XHTML serialization. Hidden elements are left out entirely."""
        if self.hidden:
            return ""
        attrs = "".join(
            f' {k}="{html.escape(str(v), quote=True)}"'
            for k, v in self.attrs.items())
        if self.tag in VOID_TAGS:
            return f"<{self.tag}{attrs}/>"
        inner = "".join(
            c.outer_html() if isinstance(c, Element) else html.escape(c, quote=False)
            for c in self.children)
        return f"<{self.tag}{attrs}>{inner}</{self.tag}>"


def h(tag: str, attrs: Optional[dict] = None, *children) -> Element:
    return Element(tag, attrs, [c for c in children if c is not None])


class _FragmentParser(HTMLParser):
    """Builds an Element tree from untrusted markup, dropping anything executable."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.root = Element("#fragment")
        self._stack = [self.root]
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if self._skip_depth:
            if tag in _DROPPED_TAGS and tag not in ("link", "meta", "base"):
                self._skip_depth += 1
            return
        if tag in _DROPPED_TAGS:
            if tag not in ("link", "meta", "base"):
                self._skip_depth = 1
            return
        if tag not in ALLOWED_TAGS:
            return
        el = Element(tag, _clean_attrs(attrs))
        self._stack[-1].children.append(el)
        if tag not in VOID_TAGS:
            self._stack.append(el)

    def handle_startendtag(self, tag, attrs):
        if self._skip_depth or tag in _DROPPED_TAGS or tag not in ALLOWED_TAGS:
            return
        self._stack[-1].children.append(Element(tag, _clean_attrs(attrs)))

    def handle_endtag(self, tag):
        if self._skip_depth:
            if tag in _DROPPED_TAGS:
                self._skip_depth -= 1
            return
        if tag not in ALLOWED_TAGS or tag in VOID_TAGS:
            return
        for i in range(len(self._stack) - 1, 0, -1):
            if self._stack[i].tag == tag:
                del self._stack[i:]
                return

    def handle_data(self, data):
        if self._skip_depth or not data:
            return
        parent = self._stack[-1]
        if parent.children and isinstance(parent.children[-1], str):
            parent.children[-1] += data
        else:
            parent.children.append(data)


def parse_fragment(markup: str) -> list:
    """Parse and sanitize a markup fragment into Elements and text nodes."""
    parser = _FragmentParser()
    parser.feed(markup or "")
    parser.close()
    return parser.root.children


def sanitize_markup(markup: str) -> str:
    return "".join(
        n.outer_html() if isinstance(n, Element) else html.escape(n, quote=False)
        for n in parse_fragment(markup))


_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_RE = re.compile(r"(?<!\*)\*(?!\*)([^*]+?)(?<!\*)\*(?!\*)")


def text_to_markup(text: str) -> str:
    """Editor text to content markup: blank line = paragraph, **bold**, *italic*."""
    out = []
    for para in re.split(r"\n\s*\n", text.strip()):
        if not para.strip():
            continue
        escaped = html.escape(para.strip(), quote=False)
        escaped = _BOLD_RE.sub(r"<strong>\1</strong>", escaped)
        escaped = _ITALIC_RE.sub(r"<em>\1</em>", escaped)
        out.append("<p>" + escaped.replace("\n", "<br/>") + "</p>")
    return "".join(out)


def markup_to_text(markup: str) -> str:
    """Plain-text rendition of content markup for the terminal."""
    parts: list[str] = []

    def walk(node):
        if isinstance(node, str):
            parts.append(node)
            return
        if node.tag == "br":
            parts.append("\n")
            return
        if node.tag == "img":
            parts.append("[image]")
            return
        block = node.tag in BLOCK_TAGS
        if block:
            parts.append("\n")
        if node.tag == "li":
            parts.append("- ")
        for child in node.children:
            walk(child)
        if block:
            parts.append("\n")

    for n in parse_fragment(markup):
        walk(n)
    text = re.sub(r"[ \t]+\n", "\n", "".join(parts))
    return re.sub(r"\n{3,}", "\n\n", text).strip()


# ════════════════════════════════════════════════════════════════════════
#  Rendering
# ════════════════════════════════════════════════════════════════════════


def format_long_date(value: str) -> str:
    try:
        d = date_cls.fromisoformat(value)
    except (TypeError, ValueError):
        return value
    return f"{d:%A}, {d:%B} {d.day}, {d.year}"


def render_entry(entry: Entry) -> Element:
    """Card for one entry. Content is sanitized on the way in."""
    meta = []
    if entry.location:
        meta.append(h("div", {"class": "entry-location"},
                      h("strong", None, "Location: "), entry.location))
    if entry.event:
        meta.append(h("div", {"class": "entry-event"},
                      h("strong", None, "Event: "), entry.event))

    pictures = [
        h("img", {"src": src, "alt": "Diary image", "id": f"img-{entry.id}-{i}"})
        for i, src in enumerate(entry.images)
        if src.startswith("data:image/")
    ]

    return h(
        "div", {"class": "diary-entry", "id": f"entry-{entry.id}"},
        h("div", {"class": "entry-header"},
          h("div", {"class": "entry-title"}, entry.title),
          h("div", {"class": "entry-date"}, format_long_date(entry.date))),
        h("div", {"class": "entry-meta"}, *meta) if meta else None,
        h("div", {"class": "entry-content"}, *parse_fragment(entry.content)),
        h("div", {"class": "entry-images"}, *pictures) if pictures else None,
        h("div", {"class": "entry-actions"},
          h("button", {"class": "btn btn-small btn-info",
                       "id": f"export-pdf-{entry.id}"}, "Export PDF"),
          h("button", {"class": "btn btn-small btn-info",
                       "id": f"export-png-{entry.id}"}, "Export PNG"),
          h("button", {"class": "btn btn-small btn-danger",
                       "id": f"delete-{entry.id}"}, "Delete")),
    )


def render_entries(entries) -> Element:
    cards = [render_entry(e) for e in entries]
    if not cards:
        cards = [h("p", {"class": "no-entries"},
                   "No entries yet. Start writing your story!")]
    return h("div", {"id": "entriesContainer", "class": "entries-container"}, *cards)


class DiaryView:
    """What the list shows: the store's entries filtered by ``criteria``.

    ``render()`` rebuilds the document from data every time; ``document``
    keeps the last one.
    """

    def __init__(self, store: EntryStore):
        self.store = store
        self.criteria = FilterCriteria()
        self.document: Optional[Element] = None

    def visible_entries(self) -> list[Entry]:
        return filter_entries(self.store.all(), self.criteria)

    def render(self) -> Element:
        self.document = render_entries(self.visible_entries())
        return self.document


# ════════════════════════════════════════════════════════════════════════
#  Layout
# ════════════════════════════════════════════════════════════════════════

VIEW_WIDTH = 760
BASE_FONT_SIZE = 14
LINE_HEIGHT = 1.4
MAX_IMAGE_HEIGHT = 240
CONTROL_HEIGHT = 24
UNSUPPORTED_TAGS = frozenset({
    "input", "textarea", "select", "button", "iframe", "video", "audio",
    "canvas", "object", "embed",
})

_FONT_SIZE_RE = re.compile(r"font-size:\s*(\d+(?:\.\d+)?)px")


@dataclass(frozen=True)
class TextStyle:
    size: float = BASE_FONT_SIZE
    bold: bool = False
    color: str = "#333333"


_TAG_STYLES = {
    "h1": {"size": 26, "bold": True},
    "h2": {"size": 22, "bold": True},
    "h3": {"size": 18, "bold": True},
    "h4": {"size": 16, "bold": True},
    "h5": {"size": 14, "bold": True},
    "h6": {"size": 13, "bold": True},
    "strong": {"bold": True},
    "b": {"bold": True},
    "small": {"size": 12},
    "a": {"color": "#d6336c"},
    "code": {"color": "#555555"},
}
_CLASS_STYLES = {
    "entry-title": {"size": 20, "bold": True, "color": "#d6336c"},
    "entry-date": {"size": 13, "color": "#888888"},
    "entry-meta": {"size": 13, "color": "#555555"},
    "no-entries": {"color": "#888888"},
}
# (padding, margin below, framed)
_CLASS_BOXES = {
    "entries-container": (20, 0, False),
    "diary-entry": (16, 16, True),
    "entry-header": (0, 6, False),
    "entry-meta": (0, 8, False),
    "entry-content": (0, 8, False),
    "entry-images": (0, 4, False),
}
_TAG_BOXES = {
    tag: (0, 8, False)
    for tag in ("p", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol",
                "blockquote", "pre", "figure")
}
_INDENTS = {"ul": 20, "ol": 20, "blockquote": 16}


@dataclass
class TextRun:
    x: float
    text: str
    style: TextStyle


@dataclass
class LineBox:
    y: float
    height: float
    runs: list[TextRun]


@dataclass
class ImageBox:
    x: float
    y: float
    width: int
    height: int
    src: str


@dataclass
class RectBox:
    x: float
    y: float
    width: float
    height: float
    outline: Optional[str] = None
    fill: Optional[str] = None


@dataclass
class LayoutResult:
    boxes: list
    width: int
    height: int


def decode_data_uri(src: str) -> Optional[tuple[str, bytes]]:
    """(MIME type, payload) of a base64 ``data:`` URI, or None."""
    if not src.startswith("data:") or ";base64," not in src:
        return None
    header, encoded = src.split(",", 1)
    try:
        return header[5:].split(";", 1)[0], base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError):
        return None


def decode_data_uri_image(src: str) -> Optional[Image.Image]:
    """Open a ``data:image/...;base64`` URI with Pillow, or None."""
    decoded = decode_data_uri(src)
    if decoded is None:
        return None
    try:
        img = Image.open(io.BytesIO(decoded[1]))
        img.load()
        return img
    except (OSError, ValueError):
        return None


class FontBook:
    """Pillow fonts keyed by (pixel size, bold)."""

    def __init__(self, font_path=None, bold_font_path=None):
        self.font_path = font_path
        self.bold_font_path = bold_font_path
        self._cache: dict = {}

    def get(self, size: float, bold: bool = False):
        key = (max(1, int(round(size))), bold)
        font = self._cache.get(key)
        if font is None:
            path = (self.bold_font_path or self.font_path) if bold else self.font_path
            if path:
                font = ImageFont.truetype(str(path), key[0])
            else:
                font = ImageFont.load_default(key[0])
            self._cache[key] = font
        return font

    def text_width(self, text: str, style: TextStyle) -> float:
        return self.get(style.size, style.bold).getlength(text)

    def draw_kwargs(self, style: TextStyle, font, scale: int) -> dict:
        # No bold face available: thicken the regular one.
        if (style.bold and not self.bold_font_path
                and isinstance(font, ImageFont.FreeTypeFont)):
            return {"stroke_width": max(1, scale // 2), "stroke_fill": style.color}
        return {}


class BlockLayout:
    """Stacks blocks vertically and wraps inline text word by word.

    In strict mode (drawing) form controls and embedded widgets raise
    UnsupportedContentError; otherwise (measuring) they take a fixed slot.
    """

    def __init__(self, fonts: FontBook, width: float = VIEW_WIDTH,
                 strict: bool = False):
        self.fonts = fonts
        self.width = width
        self.strict = strict
        self.boxes: list = []
        self.y = 0.0

    def layout(self, node: Element) -> LayoutResult:
        self.boxes = []
        self.y = 0.0
        if not node.hidden:
            self._block(node, 0.0, float(self.width),
                        self._style_for(node, TextStyle()), outer=True)
        return LayoutResult(self.boxes, int(math.ceil(self.width)),
                            int(math.ceil(self.y)))

    def _style_for(self, el: Element, parent: TextStyle) -> TextStyle:
        overrides = dict(_TAG_STYLES.get(el.tag, {}))
        for cls in el.classes:
            overrides.update(_CLASS_STYLES.get(cls, {}))
        m = _FONT_SIZE_RE.search(el.attrs.get("style", ""))
        if m:
            overrides["size"] = float(m.group(1))
        return replace(parent, **overrides) if overrides else parent

    def _box_metrics(self, el: Element):
        for cls in el.classes:
            if cls in _CLASS_BOXES:
                return _CLASS_BOXES[cls]
        return _TAG_BOXES.get(el.tag, (0, 0, False))

    def _block(self, el, x, width, style, outer=False):
        pad, margin, framed = self._box_metrics(el)
        indent = _INDENTS.get(el.tag, 0)
        top = self.y
        self.y += pad
        inner_x = x + pad + indent
        inner_w = max(1.0, width - 2 * pad - indent)
        inline: list = []
        if el.tag == "li":
            inline.append(("•", style))
            inline.append((" ", style))
        self._flow(el, inner_x, inner_w, style, inline)
        self._flush(inline, inner_x, inner_w)
        self.y += pad
        if framed:
            self.boxes.append(RectBox(x, top, width, self.y - top, outline="#f3c4d4"))
        if not outer:
            self.y += margin

    def _flow(self, node, x, width, style, inline):
        for child in node.children:
            if isinstance(child, str):
                inline.extend(self._split(child, style, node.tag == "pre"))
                continue
            if child.hidden:
                continue
            tag = child.tag
            if tag in UNSUPPORTED_TAGS:
                if self.strict:
                    raise UnsupportedContentError(
                        f"<{tag}> cannot be rasterized", {"tag": tag})
                self._flush(inline, x, width)
                self.y += CONTROL_HEIGHT
            elif tag == "br":
                inline.append(("\n", style))
            elif tag == "img":
                self._flush(inline, x, width)
                self._image(child, x, width)
            elif tag == "hr":
                self._flush(inline, x, width)
                self.boxes.append(RectBox(x, self.y + 4, width, 1, fill="#dddddd"))
                self.y += 9
            elif tag in BLOCK_TAGS:
                self._flush(inline, x, width)
                self._block(child, x, width, self._style_for(child, style))
            else:
                self._flow(child, x, width, self._style_for(child, style), inline)

    @staticmethod
    def _split(text, style, pre):
        items = []
        if pre:
            for i, line in enumerate(text.split("\n")):
                if i:
                    items.append(("\n", style))
                if line:
                    items.append((line, style))
            return items
        for token in re.split(r"(\s+)", text):
            if token:
                items.append((" ", style) if token.isspace() else (token, style))
        return items

    def _emit(self, runs, style):
        size = max((r.style.size for r in runs), default=style.size)
        height = size * LINE_HEIGHT
        self.boxes.append(LineBox(self.y, height, runs))
        self.y += height

    def _flush(self, inline, x, width):
        if not inline:
            return
        line: list[TextRun] = []
        cursor = 0.0
        space_pending = False
        style = inline[-1][1]
        for text, style in inline:
            if text == "\n":
                self._emit(line, style)
                line, cursor, space_pending = [], 0.0, False
                continue
            if text == " ":
                space_pending = bool(line)
                continue
            space_w = self.fonts.text_width(" ", style) if space_pending else 0.0
            word_w = self.fonts.text_width(text, style)
            if word_w > width:
                # Too wide for any line (long URL, unspaced script): break by character.
                if line:
                    self._emit(line, style)
                    line, cursor = [], 0.0
                piece = ""
                for ch in text:
                    if piece and self.fonts.text_width(piece + ch, style) > width:
                        self._emit([TextRun(x, piece, style)], style)
                        piece = ""
                    piece += ch
                text, word_w, space_w = piece, self.fonts.text_width(piece, style), 0.0
            elif line and cursor + space_w + word_w > width:
                self._emit(line, style)
                line, cursor, space_w = [], 0.0, 0.0
            line.append(TextRun(x + cursor + space_w, text, style))
            cursor += space_w + word_w
            space_pending = False
        if line:
            self._emit(line, style)
        inline.clear()

    def _image(self, el, x, width):
        src = el.attrs.get("src", "")
        picture = decode_data_uri_image(src)
        if picture is None:
            w, hgt = 120.0, 90.0
        else:
            w, hgt = picture.size
            ratio = min(1.0, width / w, MAX_IMAGE_HEIGHT / hgt)
            w, hgt = w * ratio, hgt * ratio
        w, hgt = max(1, round(w)), max(1, round(hgt))
        self.boxes.append(ImageBox(x, self.y, w, hgt, src))
        self.y += hgt + 8


def measure(node: Element, fonts: FontBook, width: int = VIEW_WIDTH) -> tuple[int, int]:
    """Rendered box of a fragment, in CSS pixels."""
    result = BlockLayout(fonts, width).layout(node)
    return result.width, result.height


# ════════════════════════════════════════════════════════════════════════
#  Snapshot Renderer
# ════════════════════════════════════════════════════════════════════════

SVG_NS = "http://www.w3.org/2000/svg"
XHTML_NS = "http://www.w3.org/1999/xhtml"
SNAPSHOT_SCALE = 2
FALLBACK_LABEL = "Export content"
MAX_SURFACE_SIDE = 32767
MAX_SURFACE_AREA = 268_435_456


class Surface:
    """RGB raster with a fixed device scale; coordinates are CSS pixels."""

    def __init__(self, width: int, height: int, scale: int = SNAPSHOT_SCALE):
        device = (width * scale, height * scale)
        if width <= 0 or height <= 0:
            raise SurfaceAllocationError(
                "Nothing to draw: fragment has an empty box.",
                {"width": width, "height": height})
        if max(device) > MAX_SURFACE_SIDE or device[0] * device[1] > MAX_SURFACE_AREA:
            raise SurfaceAllocationError(
                "Fragment is too large to rasterize.",
                {"width": width, "height": height})
        try:
            self.image = Image.new("RGB", device)
        except MemoryError as exc:
            raise SurfaceAllocationError("Out of memory for raster surface.") from exc
        self.width = width
        self.height = height
        self.scale = scale
        self._draw = ImageDraw.Draw(self.image)

    def fill_rect(self, color, x, y, w, hgt):
        s = self.scale
        self._draw.rectangle(
            [x * s, y * s, (x + w) * s - 1, (y + hgt) * s - 1], fill=color)

    def fill_text(self, text, x, baseline, size, color, fonts: FontBook):
        font = fonts.get(size * self.scale)
        anchor = "ls" if isinstance(font, ImageFont.FreeTypeFont) else None
        self._draw.text((x * self.scale, baseline * self.scale), text,
                        font=font, fill=color, anchor=anchor)

    def draw_image(self, image: Image.Image, x=0, y=0):
        rgba = image if image.mode == "RGBA" else image.convert("RGBA")
        self.image.paste(rgba, (int(x * self.scale), int(y * self.scale)), rgba)

    def to_png(self) -> bytes:
        buf = io.BytesIO()
        self.image.save(buf, format="PNG")
        return buf.getvalue()


def build_svg_container(markup: str, width: int, height: int) -> str:
    """Vector image whose payload is the markup as a foreign XHTML subtree."""
    return (
        f'<svg xmlns="{SVG_NS}" width="{width}" height="{height}">'
        '<foreignObject width="100%" height="100%">'
        f'<div xmlns="{XHTML_NS}" style="font-size: {BASE_FONT_SIZE}px;">'
        f"{markup}</div></foreignObject></svg>"
    )


def _from_etree(node) -> Element:
    el = Element(node.tag.rsplit("}", 1)[-1],
                 {k.rsplit("}", 1)[-1]: v for k, v in node.attrib.items()})
    if node.text:
        el.children.append(node.text)
    for child in node:
        el.children.append(_from_etree(child))
        if child.tail:
            el.children.append(child.tail)
    return el


class ForeignObjectRasterizer:
    """Loads an SVG foreignObject container and draws its XHTML payload."""

    def __init__(self, fonts: FontBook):
        self.fonts = fonts

    def load(self, path, scale: int = 1) -> Image.Image:
        try:
            root = ElementTree.parse(path).getroot()
        except ElementTree.ParseError as exc:
            raise SnapshotLoadError(f"Malformed vector container: {exc}") from exc
        if root.tag != f"{{{SVG_NS}}}svg":
            raise SnapshotLoadError("Not an SVG document.")
        try:
            width = float(root.get("width", ""))
            height = float(root.get("height", ""))
        except ValueError as exc:
            raise SnapshotLoadError("SVG has no usable size.") from exc
        foreign = root.find(f"{{{SVG_NS}}}foreignObject")
        if foreign is None:
            raise SnapshotLoadError("SVG has no foreignObject payload.")

        body = Element("#foreign", children=[_from_etree(c) for c in foreign])
        result = BlockLayout(self.fonts, width, strict=True).layout(body)
        image = Image.new(
            "RGBA", (math.ceil(width * scale), math.ceil(height * scale)), (0, 0, 0, 0))
        self._paint(image, result.boxes, scale)
        return image

    def _paint(self, image, boxes, scale):
        draw = ImageDraw.Draw(image)
        for box in boxes:
            if isinstance(box, LineBox):
                for run in box.runs:
                    font = self.fonts.get(run.style.size * scale, run.style.bold)
                    top = box.y + box.height - run.style.size * (1 + LINE_HEIGHT) / 2
                    draw.text((run.x * scale, top * scale), run.text, font=font,
                              fill=run.style.color,
                              **self.fonts.draw_kwargs(run.style, font, scale))
            elif isinstance(box, ImageBox):
                left, top = int(box.x * scale), int(box.y * scale)
                size = (box.width * scale, box.height * scale)
                picture = decode_data_uri_image(box.src)
                if picture is None:
                    draw.rectangle([left, top, left + size[0] - 1, top + size[1] - 1],
                                   outline="#cccccc", width=scale)
                    continue
                picture = picture.convert("RGBA").resize(size, Image.Resampling.LANCZOS)
                image.paste(picture, (left, top), picture)
            elif isinstance(box, RectBox):
                draw.rectangle(
                    [box.x * scale, box.y * scale,
                     (box.x + box.width) * scale - 1, (box.y + box.height) * scale - 1],
                    outline=box.outline, fill=box.fill,
                    width=scale if box.outline else 0)


def _release(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


class SnapshotRenderer:
    """Rasterizes a rendered fragment without a capture library.

    The fragment is wrapped in an SVG foreignObject container, written to a
    temporary file and loaded by ``loader`` off the event loop. A load that
    fails or exceeds ``load_timeout`` yields a white surface carrying
    FALLBACK_LABEL instead of an error. Only surface allocation failures
    propagate.

    A timed-out load is abandoned, not cancelled: the loader keeps its
    executor thread until it returns, and its result is discarded.
    """

    def __init__(self, fonts: Optional[FontBook] = None, loader=None,
                 load_timeout: float = 10.0, width: int = VIEW_WIDTH):
        self.fonts = fonts or FontBook()
        self.loader = loader or ForeignObjectRasterizer(self.fonts)
        self.load_timeout = load_timeout
        self.width = width

    async def snapshot(self, fragment: Element) -> Surface:
        w, hgt = measure(fragment, self.fonts, self.width)
        surface = Surface(w, hgt, SNAPSHOT_SCALE)
        surface.fill_rect("#ffffff", 0, 0, w, hgt)

        blob = build_svg_container(fragment.outer_html(), w, hgt).encode("utf-8")
        fd, tmp_path = tempfile.mkstemp(prefix="love-diary-", suffix=".svg")
        with os.fdopen(fd, "wb") as fh:
            fh.write(blob)

        loop = asyncio.get_running_loop()
        try:
            image = await asyncio.wait_for(
                loop.run_in_executor(None, self.loader.load, tmp_path, surface.scale),
                timeout=self.load_timeout,
            )
        except Exception as exc:
            logger.warning("Snapshot load failed, using fallback label: {}",
                           exc.to_dict() if isinstance(exc, DiaryError) else repr(exc))
            surface.fill_text(FALLBACK_LABEL, 10, 30, 16, "#333333", self.fonts)
        else:
            surface.draw_image(image, 0, 0)
        finally:
            _release(tmp_path)
        return surface


# ════════════════════════════════════════════════════════════════════════
#  Export
# ════════════════════════════════════════════════════════════════════════

ALL_ENTRIES = "all"

_PRINT_CSS = """
body { background: white; color: #333; font-family: sans-serif; padding: 20px; }
.diary-entry { border: 1px solid #f3c4d4; border-radius: 8px; padding: 16px;
               margin-bottom: 16px; page-break-inside: avoid; }
.entry-title { color: #d6336c; font-size: 20px; font-weight: bold; }
.entry-date { color: #888; font-size: 13px; margin-bottom: 6px; }
.entry-meta { color: #555; font-size: 13px; margin-bottom: 8px; }
.entry-images img { max-width: 100%; max-height: 240px; margin: 4px 8px 4px 0; }
.no-entries { color: #888; }
"""


@contextmanager
def hidden_elements(elements):
    """Hide elements for the duration of the block; prior state always comes back."""
    previous = [(el, el.hidden) for el in elements]
    for el in elements:
        el.hidden = True
    try:
        yield
    finally:
        for el, was_hidden in previous:
            el.hidden = was_hidden


def export_filename(entry: Optional[Entry], ext: str) -> str:
    if entry is None:
        return f"love-diary-all.{ext}"
    return f"love-diary-{entry.date}.{ext}"


def build_print_page(title: str, markup: str) -> str:
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
        f"<title>{html.escape(title)}</title>\n<style>{_PRINT_CSS}</style>\n"
        "</head>\n<body onload=\"window.print()\">\n"
        f"{markup}\n</body>\n</html>\n"
    )


def write_entry_images(entry: Entry, image_dir: Path) -> list[Path]:
    """Decode an entry's data URIs to ``<date>-<id>-<n>.<ext>`` files, in order."""
    image_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for n, src in enumerate(entry.images, 1):
        decoded = decode_data_uri(src)
        if decoded is None:
            logger.warning("Entry {} image {} is not a data URI", entry.id, n)
            continue
        mime, data = decoded
        ext = mimetypes.guess_extension(mime) or ".bin"
        path = image_dir / f"love-diary-{entry.date}-{entry.id}-{n}{ext}"
        path.write_bytes(data)
        paths.append(path)
    return paths


def open_with_system(path: Path) -> None:
    """Hand a file to the desktop's default viewer."""
    if sys.platform == "darwin":
        subprocess.Popen(["open", str(path)])
    else:
        subprocess.Popen(["xdg-open", str(path)])


class ExportController:
    """Turns the rendered view (one card or the whole list) into artifacts."""

    def __init__(self, store: EntryStore, view: DiaryView, exports_dir: Path,
                 notify: Callable[[str], None], renderer: Optional[SnapshotRenderer] = None,
                 opener: Optional[Callable[[Path], None]] = None):
        self.store = store
        self.view = view
        self.exports_dir = exports_dir
        self.notify = notify
        self.renderer = renderer or SnapshotRenderer()
        self.opener = opener or open_with_system

    def ensure_exportable(self) -> bool:
        if not self.store.all():
            self.notify("No entries to export.")
            return False
        return True

    def _resolve(self, target):
        if not self.ensure_exportable():
            return None, None
        document = self.view.render()
        if target == ALL_ENTRIES:
            return document, None
        entry = self.store.get(target)
        fragment = document.get_element_by_id(f"entry-{target}") if entry else None
        if fragment is None:
            self.notify("Entry not found in the current view.")
            return None, None
        return fragment, entry

    async def export_entry_to_image(self, target) -> Optional[Path]:
        """Write a PNG of one entry (by id) or of ALL_ENTRIES to the exports dir."""
        fragment, entry = self._resolve(target)
        if fragment is None:
            return None
        path = self.exports_dir / export_filename(entry, "png")
        try:
            with hidden_elements(fragment.find_all_by_class("entry-actions")):
                surface = await self.renderer.snapshot(fragment)
            data = surface.to_png()
            self.exports_dir.mkdir(parents=True, exist_ok=True)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, path.write_bytes, data)
        except Exception:
            logger.exception("PNG export failed for {}", target)
            self.notify("PNG export failed, please try again.")
            return None
        logger.info("Exported {} to {}", target, path)
        self.notify(f"Exported: {path.name}")
        return path

    async def print_view(self, target) -> Optional[Path]:
        """Open a printable page of the target; the viewer's print dialog makes the PDF."""
        fragment, entry = self._resolve(target)
        if fragment is None:
            return None
        title = f"Love Diary - {entry.date}" if entry else "Love Diary"
        path = self.exports_dir / export_filename(entry, "html")
        try:
            with hidden_elements(fragment.find_all_by_class("entry-actions")):
                page = build_print_page(title, fragment.outer_html())
            self.exports_dir.mkdir(parents=True, exist_ok=True)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None, lambda: path.write_text(page, encoding="utf-8"))
            self.opener(path)
        except Exception:
            logger.exception("Print pass-through failed for {}", target)
            self.notify("Could not open the print view.")
            return None
        self.notify(f"Opened {path.name} for printing.")
        return path

    async def view_images(self, entry_id) -> list[Path]:
        """Write an entry's images to ``exports/images`` and open them full size."""
        entry = self.store.get(entry_id)
        if entry is None:
            self.notify("Entry not found.")
            return []
        if not entry.images:
            self.notify("This entry has no images.")
            return []
        image_dir = self.exports_dir / "images"
        loop = asyncio.get_running_loop()
        try:
            paths = await loop.run_in_executor(
                None, write_entry_images, entry, image_dir)
            for path in paths:
                self.opener(path)
        except Exception:
            logger.exception("Opening images of entry {} failed", entry_id)
            self.notify("Could not open the images.")
            return []
        self.notify(f"Opened {len(paths)} image(s).")
        return paths


# ════════════════════════════════════════════════════════════════════════
#  Logging
# ════════════════════════════════════════════════════════════════════════


def setup_logging(data_dir: Path, level: Optional[str] = None) -> None:
    """Send logs to a file in the data dir; the full-screen UI owns the terminal."""
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(
        data_dir / "love-diary.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level,
        rotation="1 MB",
        retention=3,
        backtrace=True,
        diagnose=False,
    )


# ════════════════════════════════════════════════════════════════════════
#  SelectableList Widget
# ════════════════════════════════════════════════════════════════════════


class SelectableList:
    """Navigable list widget. Items are (id, label) pairs."""

    def __init__(self, on_select=None):
        self.items = []
        self.selected_index = 0
        self.on_select = on_select
        self._kb = KeyBindings()
        sl = self

        @self._kb.add("up")
        def _up(event):
            sl.selected_index = max(0, sl.selected_index - 1)

        @self._kb.add("down")
        def _down(event):
            sl.selected_index = min(max(0, len(sl.items) - 1), sl.selected_index + 1)

        @self._kb.add("pageup")
        def _page_up(event):
            sl.selected_index = max(0, sl.selected_index - 10)

        @self._kb.add("pagedown")
        def _page_down(event):
            sl.selected_index = min(max(0, len(sl.items) - 1), sl.selected_index + 10)

        @self._kb.add("enter")
        def _enter(event):
            if sl.items and sl.on_select:
                sl.on_select(sl.items[sl.selected_index][0])

        self.control = FormattedTextControl(
            self._get_text, focusable=True, key_bindings=self._kb,
        )
        self.window = Window(
            content=self.control, style="class:select-list", wrap_lines=False,
        )

    def _get_text(self):
        if not self.items:
            return [("class:select-list.empty", "  (empty)\n")]
        result = []
        for i, (item_id, label) in enumerate(self.items):
            if item_id == "__empty__":
                result.append(("class:select-list.empty", f"  {label}\n"))
            elif i == self.selected_index:
                result.append(("[SetCursorPosition]", ""))
                result.append(("class:select-list.selected", f"  {label}\n"))
            else:
                result.append(("", f"  {label}\n"))
        return result

    def set_items(self, items):
        self.items = items
        if self.selected_index >= len(items):
            self.selected_index = max(0, len(items) - 1)

    def selected_id(self):
        if not self.items:
            return None
        item_id = self.items[self.selected_index][0]
        return None if item_id == "__empty__" else item_id

    def select(self, item_id):
        for i, (candidate, _) in enumerate(self.items):
            if candidate == item_id:
                self.selected_index = i
                return

    def __pt_container__(self):
        return self.window


# ════════════════════════════════════════════════════════════════════════
#  Application State
# ════════════════════════════════════════════════════════════════════════


class AppState:
    """Mutable application state shared across the UI."""

    def __init__(self, store):
        self.store = store
        self.view = DiaryView(store)
        self.exporter = None
        self.notification = ""
        self.quit_pending = 0.0
        self.root_container = None
        self._expiry = None

    def notify(self, message, duration=3.0):
        """Put ``message`` in the status bar until it expires or is replaced."""
        self.notification = message
        if self._expiry is not None:
            self._expiry.cancel()
        self._expiry = asyncio.get_running_loop().call_later(
            duration, self._expire, message)
        get_app().invalidate()

    def _expire(self, message):
        if self.notification == message:
            self.notification = ""
            get_app().invalidate()

    async def run_dialog(self, dialog):
        """Float ``dialog`` over the screen and return what its future resolves to."""
        app = get_app()
        overlay = Float(content=dialog, transparent=False)
        previous = app.layout.current_window
        self.root_container.floats.append(overlay)
        app.layout.focus(dialog)
        try:
            return await dialog.future
        finally:
            if overlay in self.root_container.floats:
                self.root_container.floats.remove(overlay)
            if previous in list(app.layout.find_all_windows()):
                app.layout.focus(previous)
            app.invalidate()


# ════════════════════════════════════════════════════════════════════════
#  Helpers
# ════════════════════════════════════════════════════════════════════════


def entry_label(entry: Entry) -> str:
    label = f"{entry.date}  {entry.title}"
    if entry.location:
        label += f"  @{entry.location}"
    if entry.event:
        label += f"  #{entry.event}"
    return label


def parse_image_paths(text: str) -> list[Path]:
    """Image field: paths separated by ';', in the order given."""
    return [Path(p.strip()).expanduser() for p in text.split(";") if p.strip()]


def summarize_images(paths) -> list[str]:
    """One line per chosen image: name and pixel size, or why it won't attach."""
    lines = []
    for path in paths:
        try:
            name, _, (width, height) = describe_image(path)
        except OSError:
            lines.append(f"{path.name}: not found")
        except EntryValidationError:
            lines.append(f"{path.name}: not an image")
        else:
            lines.append(f"{name}: {width}x{height}")
    return lines


# ════════════════════════════════════════════════════════════════════════
#  Dialogs
# ════════════════════════════════════════════════════════════════════════


class EntryFormDialog:
    """New-entry form. Resolves to an EntryDraft, or None when cancelled."""

    FIELDS = ("date", "title", "location", "event", "images", "content")

    def __init__(self, today: str, values: Optional[dict] = None):
        values = values or {}
        self.future = asyncio.Future()
        self.fields = {
            name: TextArea(
                text=values.get(name, today if name == "date" else ""),
                multiline=(name == "content"),
                wrap_lines=(name == "content"),
                height=D(min=5, preferred=8) if name == "content" else 1,
            )
            for name in self.FIELDS
        }
        self._preview_key = None
        self._preview_lines: list[str] = []

        def row(label, name):
            return VSplit([
                Label(text=label, width=10, style="class:form-label"),
                self.fields[name],
            ])

        self.dialog = Dialog(
            title="New Entry",
            body=HSplit([
                row("Date", "date"),
                row("Title", "title"),
                row("Location", "location"),
                row("Event", "event"),
                row("Images", "images"),
                Window(FormattedTextControl(self._image_preview_text),
                       height=D(min=1, max=3), wrap_lines=True),
                Label(text="Content  (**bold**  *italic*  blank line = new paragraph)",
                      style="class:form-label"),
                self.fields["content"],
            ]),
            buttons=[
                Button(text="Save", handler=self.accept),
                Button(text="Cancel", handler=self.cancel),
            ],
            modal=True,
            width=D(preferred=76),
        )

    def values(self) -> dict:
        return {name: ta.text for name, ta in self.fields.items()}

    def image_preview(self) -> list[str]:
        text = self.fields["images"].text
        if text != self._preview_key:
            self._preview_key = text
            self._preview_lines = summarize_images(parse_image_paths(text))
        return self._preview_lines

    def _image_preview_text(self):
        lines = self.image_preview()
        if not lines:
            return [("class:hint", "  (image paths, separated by ;)")]
        return [("class:hint", "  " + "   ".join(lines))]

    def to_draft(self) -> EntryDraft:
        v = self.values()
        return EntryDraft(
            date=v["date"].strip(),
            title=v["title"].strip(),
            location=v["location"].strip(),
            event=v["event"].strip(),
            content=text_to_markup(v["content"]),
            images=parse_image_paths(v["images"]),
        )

    def accept(self):
        if not self.future.done():
            self.future.set_result(self.to_draft())

    def cancel(self):
        if not self.future.done():
            self.future.set_result(None)

    def __pt_container__(self):
        return self.dialog


class ConfirmDialog:
    """Yes/No confirmation dialog with y/n key bindings."""

    def __init__(self, question="Are you sure?"):
        self.future = asyncio.Future()
        kb = KeyBindings()

        @kb.add("y")
        def _yes(event):
            self._answer(True)

        @kb.add("n")
        def _no(event):
            self._answer(False)

        self._control = FormattedTextControl(
            [("", f"\n  {question}\n")], focusable=True, key_bindings=kb,
        )
        self.dialog = Dialog(
            title="Confirm",
            body=Window(content=self._control, height=3),
            buttons=[
                Button(text="(y) Yes", handler=lambda: self._answer(True)),
                Button(text="(n) No", handler=lambda: self._answer(False)),
            ],
            modal=True,
            width=D(preferred=50),
        )

    def _answer(self, value):
        if not self.future.done():
            self.future.set_result(value)

    def cancel(self):
        self._answer(False)

    def __pt_container__(self):
        return self.dialog


class ExportDialog:
    """Pick an export: PNG image or print view (PDF via the viewer)."""

    def __init__(self, title="Export"):
        self.future = asyncio.Future()
        self.list = SelectableList(on_select=self._select)
        self.list.set_items([
            ("png", "PNG image (.png)"),
            ("print", "Print / save as PDF"),
        ])

        @self.list._kb.add("c")
        def _cancel(event):
            self.cancel()

        self.dialog = Dialog(
            title=title,
            body=HSplit([self.list], padding=0),
            buttons=[Button(text="(c) Cancel", handler=self.cancel)],
            modal=True,
            width=D(preferred=40, max=50),
        )

    def _select(self, kind):
        if not self.future.done():
            self.future.set_result(kind)

    def cancel(self):
        if not self.future.done():
            self.future.set_result(None)

    def __pt_container__(self):
        return self.dialog


# ════════════════════════════════════════════════════════════════════════
#  Application
# ════════════════════════════════════════════════════════════════════════


def create_app(store, renderer=None, opener=None):
    """Build and return the prompt_toolkit Application."""
    state = AppState(store)
    state.exporter = ExportController(
        store, state.view, store.storage.exports_dir,
        notify=state.notify,
        renderer=renderer, opener=opener,
    )
    if store.recovered_from:
        state.notification = (
            f"Saved entries were unreadable; moved to {store.recovered_from.name}.")

    # ── Widgets ──────────────────────────────────────────────────────

    filter_date = TextArea(multiline=False, prompt=" Date: ", height=1,
                           style="class:input")
    filter_location = TextArea(multiline=False, prompt=" Location: ", height=1,
                               style="class:input")
    filter_event = TextArea(multiline=False, prompt=" Event: ", height=1,
                            style="class:input")
    filter_fields = [filter_date, filter_location, filter_event]
    entry_list = SelectableList()

    def current_criteria():
        return FilterCriteria(
            date=filter_date.text.strip() or None,
            location=filter_location.text.strip() or None,
            event=filter_event.text.strip() or None,
        )

    def refresh_entries():
        state.view.criteria = current_criteria()
        visible = state.view.visible_entries()
        if not state.store.all():
            entry_list.set_items([
                ("__empty__", "No entries yet. Press n to write the first one.")])
        elif not visible:
            entry_list.set_items([("__empty__", "No entries match the filter.")])
        else:
            entry_list.set_items([(e.id, entry_label(e)) for e in visible])

    for f in filter_fields:
        f.buffer.on_text_changed += lambda buf: refresh_entries()
    refresh_entries()

    def selected_entry():
        entry_id = entry_list.selected_id()
        return state.store.get(entry_id) if entry_id is not None else None

    def _get_title_hints():
        return [
            ("class:title bold", " Love Diary"),
            ("class:hint",
             "  (n) new (d) delete (e) export (E) export all (v) images (/) filter (x) clear"),
        ]

    def get_preview_text():
        entry = selected_entry()
        if entry is None:
            return [("class:hint", "\n  Nothing selected.")]
        result = [
            ("class:accent bold", f" {entry.title}\n"),
            ("class:hint", f" {format_long_date(entry.date)}\n"),
        ]
        if entry.location:
            result.append(("", f" Location: {entry.location}\n"))
        if entry.event:
            result.append(("", f" Event: {entry.event}\n"))
        result.append(("", "\n"))
        for line in markup_to_text(entry.content).splitlines():
            result.append(("", f" {line}\n"))
        if entry.images:
            result.append(("class:hint", f"\n {len(entry.images)} image(s) attached, (v) to view\n"))
        return result

    def get_status_text():
        if state.notification:
            return [("class:status", f" {state.notification}")]
        shown = len(state.view.visible_entries())
        total = len(state.store.all())
        if state.view.criteria.is_empty():
            return [("class:status", f" {total} entries")]
        return [("class:status", f" {shown} of {total} entries")]

    preview = Window(
        FormattedTextControl(get_preview_text), wrap_lines=True,
        style="class:preview",
    )

    body = HSplit([
        VSplit([
            Window(content=FormattedTextControl(_get_title_hints), height=1),
        ]),
        VSplit(filter_fields, padding=1),
        Window(height=1, char="─", style="class:hint"),
        VSplit([
            entry_list,
            Window(width=1, char="│", style="class:hint"),
            preview,
        ]),
        Window(FormattedTextControl(get_status_text), height=1,
               style="class:status", align=WindowAlign.LEFT),
    ])

    root = FloatContainer(content=body, floats=[])
    state.root_container = root

    # ── Actions ──────────────────────────────────────────────────────

    def new_entry():
        async def _do():
            values = None
            while True:
                dlg = EntryFormDialog(date_cls.today().isoformat(), values)
                draft = await state.run_dialog(dlg)
                if draft is None:
                    return
                try:
                    entry = await state.store.add(draft)
                except EntryValidationError as exc:
                    logger.info("Draft rejected: {}", exc.to_dict())
                    state.notify(exc.message)
                    values = dlg.values()
                    continue
                except OSError:
                    logger.exception("Saving entry failed")
                    state.notify("Could not save the entry.")
                    return
                break
            refresh_entries()
            entry_list.select(entry.id)
            state.notify("Entry saved.")

        asyncio.ensure_future(_do())

    def delete_entry():
        entry = selected_entry()
        if entry is None:
            return

        async def _do():
            ok = await state.run_dialog(
                ConfirmDialog(f"Delete '{entry.title}'?"))
            if not ok:
                return
            try:
                state.store.delete(entry.id)
            except OSError:
                logger.exception("Deleting entry {} failed", entry.id)
                state.notify("Could not delete the entry.")
                return
            refresh_entries()
            state.notify("Entry deleted.")

        asyncio.ensure_future(_do())

    def export(target):
        if not state.exporter.ensure_exportable():
            return
        if target is None:
            state.notify("Select an entry first.")
            return

        async def _do():
            title = "Export all entries" if target == ALL_ENTRIES else "Export entry"
            kind = await state.run_dialog(ExportDialog(title))
            if kind == "png":
                state.notify("Exporting…", duration=60)
                await state.exporter.export_entry_to_image(target)
            elif kind == "print":
                await state.exporter.print_view(target)

        asyncio.ensure_future(_do())

    def view_images():
        entry = selected_entry()
        if entry is None:
            state.notify("Select an entry first.")
            return
        asyncio.ensure_future(state.exporter.view_images(entry.id))

    def clear_filters():
        for f in filter_fields:
            f.text = ""
        refresh_entries()

    # ── Key bindings ─────────────────────────────────────────────────

    kb = KeyBindings()

    no_float = Condition(lambda: len(state.root_container.floats) == 0)
    list_focused = no_float & Condition(
        lambda: get_app().layout.current_window == entry_list.window)
    filter_focused = no_float & Condition(
        lambda: get_app().layout.current_window in [f.window for f in filter_fields])

    @kb.add("escape", eager=True)
    def _(event):
        if state.root_container.floats:
            dialog = state.root_container.floats[-1].content
            if hasattr(dialog, "cancel"):
                dialog.cancel()
        else:
            event.app.layout.focus(entry_list.window)

    @kb.add("c-q")
    def _(event):
        if state.root_container.floats:
            return
        now = time.monotonic()
        if now - state.quit_pending < 2.0:
            event.app.exit()
        else:
            state.quit_pending = now
            state.notify("Press Ctrl+Q again to quit.", duration=2.0)

    kb.add("tab", filter=no_float)(focus_next)
    kb.add("s-tab", filter=no_float)(focus_previous)

    @kb.add("n", filter=list_focused)
    def _(event):
        new_entry()

    @kb.add("d", filter=list_focused)
    def _(event):
        delete_entry()

    @kb.add("e", filter=list_focused)
    def _(event):
        entry = selected_entry()
        export(entry.id if entry else None)

    @kb.add("E", filter=list_focused)
    def _(event):
        export(ALL_ENTRIES)

    @kb.add("/", filter=list_focused)
    def _(event):
        event.app.layout.focus(filter_date.window)

    @kb.add("v", filter=list_focused)
    def _(event):
        view_images()

    @kb.add("x", filter=list_focused)
    def _(event):
        clear_filters()

    @kb.add("enter", filter=filter_focused)
    @kb.add("down", filter=filter_focused)
    def _(event):
        event.app.layout.focus(entry_list.window)

    # ── Style ────────────────────────────────────────────────────────

    style = PtStyle.from_dict({
        "": "#e0e0e0 bg:#2a2a2a",
        "title": "#e0e0e0",
        "status": "#8a8a8a bg:#333333",
        "hint": "#777777",
        "accent": "#f38ba8",
        "input": "bg:#333333 #e0e0e0",
        "preview": "",
        "select-list": "",
        "select-list.selected": "bg:#4a3440",
        "select-list.empty": "#777777",
        "form-label": "#aaaaaa",
        "dialog": "#e0e0e0 bg:#2a2a2a",
        "dialog.body": "#e0e0e0 bg:#2a2a2a",
        "dialog text-area": "#e0e0e0 bg:#333333",
        "dialog frame.label": "#f38ba8 bold",
        "dialog shadow": "bg:#111111",
        "button": "#e0e0e0 bg:#555555",
        "button.focused": "#e0e0e0 bg:#8a4a63",
        "label": "#e0e0e0",
    })

    # ── Build Application ────────────────────────────────────────────

    layout = Layout(root, focused_element=entry_list.window)

    app = Application(
        layout=layout,
        key_bindings=kb,
        style=style,
        full_screen=True,
        mouse_support=False,
    )
    app.ttimeoutlen = 0.05

    return app


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def main() -> None:
    if os.environ.get("LOVE_DIARY_HOME"):
        data_dir = Path(os.environ["LOVE_DIARY_HOME"]).expanduser()
    else:
        data_dir = Path.home() / ".love-diary"

    storage = LocalStorage(data_dir)
    setup_logging(data_dir)
    store = EntryStore(storage)
    store.load()

    fonts = FontBook(
        os.environ.get("LOVE_DIARY_FONT") or None,
        os.environ.get("LOVE_DIARY_BOLD_FONT") or None,
    )
    app = create_app(store, renderer=SnapshotRenderer(fonts))
    app.run()


if __name__ == "__main__":
    main()
