"""What a sync needs from wherever the journal is kept.

The cursors never touch storage; the caller moves finished pages into it
and keeps the resume values in its metadata.
"""

import dataclasses
import datetime as dt
import enum
from typing import Any, Dict, Mapping, Optional, Protocol

from .comments import MERGE_FIELDS, CommentPartial, CommentState
from .entry import CommentSetting, Entry, Screening, Security

LASTSYNC_KEY = "lastsync"
MAXID_KEY = "maxid"
COMMENT_START_KEY = "comment_start"
BODY_START_KEY = "body_start"


class Storage(Protocol):
    def store_entry(self, entry: Entry) -> None: ...
    def get_entry(self, itemid: int) -> Optional[Entry]: ...
    def store_comments(self, comments: Mapping[int, CommentPartial], meta_only: bool) -> None: ...
    def store_usermap(self, usermap: Mapping[int, str]) -> None: ...
    def last_comment_id(self, full_only: bool) -> Optional[int]: ...
    def get_meta(self, key: str) -> Optional[str]: ...
    def set_meta(self, key: str, value: Optional[str]) -> None: ...


class MemoryStore:
    def __init__(self):
        self.entries: Dict[int, Entry] = {}
        self.comments: Dict[int, CommentPartial] = {}
        self.users: Dict[int, str] = {}
        self.meta: Dict[str, str] = {}

    def store_entry(self, entry: Entry) -> None:
        self.entries[entry.itemid] = entry

    def get_entry(self, itemid: int) -> Optional[Entry]:
        return self.entries.get(itemid)

    def store_comments(self, comments: Mapping[int, CommentPartial], meta_only: bool) -> None:
        # Newer values win over stored ones: a comment can be deleted or
        # screened between two syncs.
        for cid, incoming in comments.items():
            merged = dataclasses.replace(incoming)
            if meta_only:
                merged.subject = merged.body = merged.time = None
            stored = self.comments.get(cid)
            if stored is not None:
                for name in MERGE_FIELDS:
                    if getattr(merged, name) is None:
                        setattr(merged, name, getattr(stored, name))
            self.comments[cid] = merged

    def store_usermap(self, usermap: Mapping[int, str]) -> None:
        self.users.update(usermap)

    def last_comment_id(self, full_only: bool) -> Optional[int]:
        ids = [cid for cid, c in self.comments.items() if c.has_body or not full_only]
        return max(ids) if ids else None

    def get_meta(self, key: str) -> Optional[str]:
        return self.meta.get(key)

    def set_meta(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self.meta.pop(key, None)
        else:
            self.meta[key] = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meta": dict(self.meta),
            "users": {str(k): v for k, v in sorted(self.users.items())},
            "entries": [_plain(dataclasses.asdict(e)) for _, e in sorted(self.entries.items())],
            "comments": [_plain(dataclasses.asdict(c)) for _, c in sorted(self.comments.items())],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MemoryStore":
        """Rebuild a store from what ``to_dict`` wrote."""
        store = cls()
        store.meta.update(data.get("meta", {}))
        store.users.update({int(k): v for k, v in data.get("users", {}).items()})
        for raw in data.get("entries", []):
            entry = _entry_from_plain(raw)
            store.entries[entry.itemid] = entry
        for raw in data.get("comments", []):
            comment = _comment_from_plain(raw)
            store.comments[comment.comment_id] = comment
        return store


def _time(value: Optional[str]) -> Optional[dt.datetime]:
    return dt.datetime.fromisoformat(value) if value else None


def _entry_from_plain(raw: Mapping[str, Any]) -> Entry:
    values = dict(raw)
    values["comments"] = CommentSetting(values.get("comments", CommentSetting.NORMAL.value))
    values["security"] = Security(values.get("security", Security.PUBLIC.value))
    values["screening"] = Screening(values.get("screening", Screening.DEFAULT.value))
    values["time"] = _time(values.get("time"))
    return Entry(**values)


def _comment_from_plain(raw: Mapping[str, Any]) -> CommentPartial:
    values = dict(raw)
    state = values.get("state")
    values["state"] = CommentState(state) if state is not None else None
    values["time"] = _time(values.get("time"))
    return CommentPartial(**values)


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dt.datetime):
        return value.isoformat()
    return value
