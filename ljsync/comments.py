"""Comments, their merge rule, and the comment export document decoders.

The export comes in two flavours sharing one schema: the metadata document
(ids, posters, state, linkage) and the body document (subject, body, date).
A field missing from a document stays ``None``; it is never defaulted, so the
two halves of a comment can be merged later without inventing values.

Two decoders read it: ``TreeDecoder`` builds the whole tree first,
``StreamDecoder`` consumes parser events as the bytes arrive.  They must
produce identical pages.
"""

import datetime as dt
import enum
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, fields, replace
from typing import Dict, Iterator, List, Mapping, Optional, Union

from .errors import ConflictError, DecodeError, UserError

log = logging.getLogger(__name__)

Document = Union[str, bytes]


class CommentState(enum.Enum):
    ACTIVE = "A"
    DELETED = "D"
    SCREENED = "S"


def state_from_string(text: Optional[str]) -> CommentState:
    if text is None or text == "A":
        return CommentState.ACTIVE
    if text == "D":
        return CommentState.DELETED
    if text == "S":
        return CommentState.SCREENED
    raise DecodeError(f"invalid comment state: {text!r}")


def state_to_string(state: Optional[CommentState]) -> Optional[str]:
    if state is None or state is CommentState.ACTIVE:
        return None
    return state.value


@dataclass
class CommentPartial:
    comment_id: int
    poster_id: Optional[int] = None
    item_id: Optional[int] = None
    parent_id: Optional[int] = None
    state: Optional[CommentState] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    time: Optional[dt.datetime] = None

    @property
    def effective_state(self) -> CommentState:
        """Absent state means active."""
        return self.state or CommentState.ACTIVE

    @property
    def has_body(self) -> bool:
        return self.body is not None


MERGE_FIELDS = [f.name for f in fields(CommentPartial) if f.name != "comment_id"]


def merge_comment(existing: Optional[CommentPartial], incoming: CommentPartial) -> CommentPartial:
    """Union two partial records of one comment.

    A field set on only one side is kept; a field set on both must agree,
    otherwise ``ConflictError`` names it.  Neither argument is modified.
    """
    if existing is None:
        return replace(incoming)
    if existing.comment_id != incoming.comment_id:
        raise UserError(f"cannot merge comment {incoming.comment_id} into {existing.comment_id}")
    merged = {}
    for name in MERGE_FIELDS:
        old, new = getattr(existing, name), getattr(incoming, name)
        if old is not None and new is not None and old != new:
            raise ConflictError(existing.comment_id, name, old, new)
        merged[name] = old if old is not None else new
    return CommentPartial(existing.comment_id, **merged)


@dataclass
class CommentExportPage:
    max_comment_id: Optional[int] = None
    comments: Dict[int, CommentPartial] = field(default_factory=dict)
    usermap: Dict[int, str] = field(default_factory=dict)

    def add(self, partial: CommentPartial) -> None:
        cid = partial.comment_id
        self.comments[cid] = merge_comment(self.comments.get(cid), partial)

    def set_max_id(self, value: int) -> None:
        if self.max_comment_id is not None and self.max_comment_id != value:
            raise DecodeError(f"maxid given twice ({self.max_comment_id} and {value})")
        self.max_comment_id = value

    def last_id(self) -> Optional[int]:
        return max(self.comments) if self.comments else None

# ---------------------- Field helpers --------------------

TEXT_FIELDS = ("subject", "body", "date")

def _int(text: Optional[str], what: str) -> int:
    try:
        return int((text or "").strip())
    except ValueError:
        raise DecodeError(f"bad integer for {what}: {text!r}")

def _optional_int(text: Optional[str], what: str) -> Optional[int]:
    return None if text is None else _int(text, what)

def parse_xmlschema(text: Optional[str]) -> dt.datetime:
    raw = (text or "").strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        when = dt.datetime.fromisoformat(raw)
    except ValueError:
        raise DecodeError(f"bad date: {text!r}")
    if when.tzinfo is None:
        return when.replace(tzinfo=dt.timezone.utc)
    return when.astimezone(dt.timezone.utc)

def partial_from_attrs(attrs: Mapping[str, str]) -> CommentPartial:
    if "id" not in attrs:
        raise DecodeError("comment without id")
    cid = _int(attrs["id"], "comment id")
    state = attrs.get("state")
    return CommentPartial(
        comment_id=cid,
        poster_id=_optional_int(attrs.get("posterid"), "posterid"),
        item_id=_optional_int(attrs.get("jitemid"), "jitemid"),
        parent_id=_optional_int(attrs.get("parentid"), "parentid"),
        state=state_from_string(state) if state is not None else None,
    )

def apply_text(partial: CommentPartial, tag: str, text: Optional[str]) -> None:
    if tag == "subject":
        partial.subject = text or ""
    elif tag == "body":
        partial.body = text or ""
    elif tag == "date":
        partial.time = parse_xmlschema(text)

def add_usermap(page: CommentExportPage, attrs: Mapping[str, str]) -> None:
    user = attrs.get("user")
    if user is None:
        raise DecodeError("usermap without user")
    page.usermap[_int(attrs.get("id"), "usermap id")] = user

# ---------------------- Decoders -------------------------

class Decoder:
    name = ""

    def decode(self, document: Document) -> CommentExportPage:
        raise NotImplementedError


class TreeDecoder(Decoder):
    name = "tree"

    def decode(self, document: Document) -> CommentExportPage:
        try:
            root = ET.fromstring(document)
        except ET.ParseError as e:
            raise DecodeError(f"export document: {e}") from e

        page = CommentExportPage()
        for e in root.findall("maxid"):
            page.set_max_id(_int(e.text, "maxid"))
        for e in root.findall("comments/comment"):
            partial = partial_from_attrs(e.attrib)
            for child in e:
                if child.tag in TEXT_FIELDS:
                    apply_text(partial, child.tag, child.text)
            page.add(partial)
        for e in root.findall("usermaps/usermap"):
            add_usermap(page, e.attrib)
        return page


class StreamDecoder(Decoder):
    name = "stream"

    def __init__(self, chunk_size: int = 64 * 1024):
        self.chunk_size = chunk_size

    def decode(self, document: Document) -> CommentExportPage:
        parser = ET.XMLPullParser(events=("start", "end"))
        page = CommentExportPage()
        path: List[str] = []
        current: List[CommentPartial] = []
        try:
            for chunk in _chunks(document, self.chunk_size):
                parser.feed(chunk)
                self._drain(parser, page, path, current)
            parser.close()
            self._drain(parser, page, path, current)
        except ET.ParseError as e:
            raise DecodeError(f"export document: {e}") from e
        return page

    def _drain(self, parser: ET.XMLPullParser, page: CommentExportPage,
               path: List[str], current: List[CommentPartial]) -> None:
        for event, elem in parser.read_events():
            if event == "start":
                path.append(elem.tag)
                where = path[1:]
                if where == ["comments", "comment"]:
                    current.append(partial_from_attrs(elem.attrib))
                elif where == ["usermaps", "usermap"]:
                    add_usermap(page, elem.attrib)
                continue

            where = path[1:]
            if where == ["maxid"]:
                page.set_max_id(_int(elem.text, "maxid"))
            elif len(where) == 3 and where[:2] == ["comments", "comment"] and elem.tag in TEXT_FIELDS:
                apply_text(current[-1], elem.tag, elem.text)
            elif where == ["comments", "comment"]:
                page.add(current.pop())
            path.pop()
            if 1 < len(where) <= 2:
                elem.clear()


def _chunks(document: Document, size: int) -> Iterator[Document]:
    for i in range(0, len(document), size):
        yield document[i:i + size]


DECODERS = {
    TreeDecoder.name: TreeDecoder,
    StreamDecoder.name: StreamDecoder,
}
DEFAULT_DECODER = StreamDecoder.name


def get_decoder(name: Optional[str] = None) -> Decoder:
    try:
        return DECODERS[name or DEFAULT_DECODER]()
    except KeyError:
        raise UserError(f"unknown decoder {name!r} (choose from {', '.join(sorted(DECODERS))})")
