"""Journal entries and the flat-protocol operations that move them.

Properties are an open set: the server keeps adding new ones.  The ones we
understand become attributes; the rest land in ``Entry.props`` untouched.
In strict mode a property outside ``KNOWN_EXTRA_PROPS`` is an error instead.
"""

import datetime as dt
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import unquote_plus

from .errors import AccidentalDeleteError, DecodeError, UnknownFieldError, UserError
from .protocol import FieldView, FlatResponse, ProtocolClient, ljtime_to_time, wire_int

log = logging.getLogger(__name__)

# Seen in the wild, meaningful only to the server; kept in props.
KNOWN_EXTRA_PROPS = frozenset(["revnum", "revtime", "commentalter", "unknown8bit", "useragent"])


class Security(enum.Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    FRIENDS = "friends"
    CUSTOM = "custom"


class CommentSetting(enum.Enum):
    NORMAL = "normal"
    NONE = "none"
    NOEMAIL = "noemail"


class Screening(enum.Enum):
    DEFAULT = ""
    ALL = "A"
    ANONYMOUS = "R"
    NONFRIENDS = "F"
    NONE = "N"


@dataclass(eq=False)
class Entry:
    itemid: Optional[int] = None
    anum: Optional[int] = None
    subject: Optional[str] = None
    event: Optional[str] = None
    moodid: Optional[int] = None
    mood: Optional[str] = None
    music: Optional[str] = None
    location: Optional[str] = None
    taglist: List[str] = field(default_factory=list)
    pickeyword: Optional[str] = None
    preformatted: bool = False
    backdated: bool = False
    comments: CommentSetting = CommentSetting.NORMAL
    time: Optional[dt.datetime] = None
    security: Security = Security.PUBLIC
    allowmask: Optional[int] = None
    screening: Screening = Screening.DEFAULT
    has_screened: bool = False
    props: Dict[str, str] = field(default_factory=dict)

    CONTENT_FIELDS = ("subject", "event", "moodid", "mood", "music", "location",
                      "pickeyword", "preformatted", "backdated", "comments", "security",
                      "allowmask", "screening", "props")

    def __eq__(self, other: Any) -> bool:
        # The server keeps minutes, not seconds, and hands tags back sorted.
        if not isinstance(other, Entry):
            return NotImplemented
        if any(getattr(self, f) != getattr(other, f) for f in self.CONTENT_FIELDS):
            return False
        if sorted(self.taglist) != sorted(other.taglist):
            return False
        return _minute(self.time) == _minute(other.time)

    @property
    def display_itemid(self) -> int:
        """The id used in URLs, a function of itemid and anum."""
        return (self.itemid << 8) + (self.anum or 0)

    def url(self, journal: str) -> str:
        return f"https://{journal.replace('_', '-')}.livejournal.com/{self.display_itemid}.html"

    # ---------------------- Decoding ------------------------

    @classmethod
    def from_response(cls, view: FieldView) -> "Entry":
        itemid = view.get_int("itemid")
        if itemid is None:
            raise DecodeError(f"{view.prefix}itemid is missing")
        entry = cls(itemid=itemid, anum=view.get_int("anum", 0))
        entry.subject = view["subject"]
        raw_event = view["event"]
        entry.event = unquote_plus(raw_event) if raw_event is not None else None

        security = view["security"]
        if security == "private":
            entry.security = Security.PRIVATE
        elif security == "usemask":
            if view["allowmask"] == "1":
                entry.security = Security.FRIENDS
            else:
                entry.security = Security.CUSTOM
                entry.allowmask = view.get_int("allowmask", 0)
        elif security not in (None, "", "public"):
            raise DecodeError(f"unknown security {security!r}")

        if view["eventtime"]:
            entry.time = ljtime_to_time(view["eventtime"])
        return entry

    def load_prop(self, name: str, value: Optional[str], strict: bool = False) -> None:
        if name == "current_mood":
            self.mood = value
        elif name == "current_moodid":
            self.moodid = wire_int(value, name)
        elif name == "current_music":
            self.music = value
        elif name == "current_location":
            self.location = value
        elif name == "taglist":
            self.taglist = sorted(value.split(", ")) if value else []
        elif name == "picture_keyword":
            self.pickeyword = value
        elif name == "opt_preformatted":
            self.preformatted = value == "1"
        elif name == "opt_nocomments":
            if value == "1":
                self.comments = CommentSetting.NONE
        elif name == "opt_noemail":
            if value == "1" and self.comments is not CommentSetting.NONE:
                self.comments = CommentSetting.NOEMAIL
        elif name == "opt_backdated":
            self.backdated = value == "1"
        elif name == "opt_screening":
            try:
                self.screening = Screening(value or "")
            except ValueError:
                raise DecodeError(f"unknown opt_screening value {value!r}")
        elif name == "hasscreened":
            self.has_screened = value == "1"
        else:
            if strict and name not in KNOWN_EXTRA_PROPS:
                raise UnknownFieldError(name, value)
            self.props[name] = value

    # ---------------------- Encoding ------------------------

    def to_request(self) -> Dict[str, Any]:
        if self.time is None:
            raise UserError("entry has no time")
        req: Dict[str, Any] = {
            "event": self.event,
            "lineendings": "unix",
            "subject": self.subject,
        }
        if self.security is Security.PUBLIC:
            req["security"] = "public"
        elif self.security is Security.PRIVATE:
            req["security"] = "private"
        elif self.security is Security.FRIENDS:
            req["security"] = "usemask"
            req["allowmask"] = 1
        else:
            req["security"] = "usemask"
            req["allowmask"] = self.allowmask

        req["year"], req["mon"], req["day"] = self.time.year, self.time.month, self.time.day
        req["hour"], req["min"] = self.time.hour, self.time.minute

        props = {
            "current_mood": self.mood,
            "current_moodid": self.moodid,
            "current_music": self.music,
            "current_location": self.location,
            "picture_keyword": self.pickeyword,
            "taglist": ", ".join(self.taglist),
            "opt_preformatted": self.preformatted,
            "opt_nocomments": self.comments is CommentSetting.NONE,
            "opt_noemail": self.comments is CommentSetting.NOEMAIL,
            "opt_backdated": self.backdated,
            "opt_screening": self.screening.value,
        }
        for name, value in props.items():
            req[f"prop_{name}"] = value
        return req


def _minute(when: Optional[dt.datetime]) -> Optional[dt.datetime]:
    return when.replace(second=0, microsecond=0) if when else None


def merge_entry(existing: Optional[Entry], incoming: Entry) -> Entry:
    """Entries are replaced wholesale by id, never field-merged."""
    return incoming

# ---------------------- Operations ----------------------

def entries_from_response(result: FlatResponse, strict: bool = False) -> Dict[int, Entry]:
    entries: Dict[int, Entry] = {}
    for view in result.each("events"):
        entry = Entry.from_response(view)
        entries[entry.itemid] = merge_entry(entries.get(entry.itemid), entry)
    for prop in result.each("prop"):
        itemid = prop.get_int("itemid")
        if itemid not in entries:
            raise DecodeError(f"prop {prop['name']!r} for unknown item {prop['itemid']!r}")
        entries[itemid].load_prop(prop["name"], prop["value"], strict)
    return entries


def get_events(client: ProtocolClient, params: Mapping[str, Any], strict: bool = False) -> Dict[int, Entry]:
    request = {"lineendings": "unix"}
    request.update(params)
    return entries_from_response(client.call("getevents", request), strict)


def get_event(client: ProtocolClient, itemid: int, strict: bool = False) -> Optional[Entry]:
    return get_events(client, {"selecttype": "one", "itemid": itemid}, strict).get(itemid)


def get_recent_events(client: ProtocolClient, howmany: int, strict: bool = False) -> Dict[int, Entry]:
    return get_events(client, {"selecttype": "lastn", "howmany": howmany}, strict)


def get_events_since(client: ProtocolClient, lastsync: Optional[str], strict: bool = False) -> Dict[int, Entry]:
    params: Dict[str, Any] = {"selecttype": "syncitems"}
    if lastsync:
        params["lastsync"] = lastsync
    return get_events(client, params, strict)


def post_event(client: ProtocolClient, entry: Entry) -> Entry:
    """Publish a new entry; fills in ``itemid`` and ``anum``."""
    result = client.call("postevent", entry.to_request())
    entry.itemid = result.get_int("itemid")
    entry.anum = result.get_int("anum")
    log.debug("posted entry %s", entry.itemid)
    return entry


def edit_event(client: ProtocolClient, entry: Entry, delete: bool = False) -> None:
    """Replace an entry on the server.

    Deletion on this protocol is an edit to an empty event, so an entry whose
    event is empty is refused unless ``delete=True`` says that is the point.
    """
    if entry.itemid is None:
        raise UserError("entry has no itemid")
    request: Dict[str, Any] = {"itemid": entry.itemid}
    if delete:
        request["event"] = ""
    else:
        if not entry.event:
            raise AccidentalDeleteError(entry.itemid)
        request.update(entry.to_request())
    client.call("editevent", request)
