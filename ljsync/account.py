"""Login and friends-list operations."""

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import DecodeError
from .protocol import FieldView, FlatResponse, ProtocolClient

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 90


def login(client: ProtocolClient) -> Optional[str]:
    """Check the credential; returns the account's self-reported name."""
    return client.call("login").get("name")


class FriendType(enum.Enum):
    USER = "user"
    COMMUNITY = "community"
    NEWS = "news"
    SYNDICATED = "syndicated"
    SHARED = "shared"


@dataclass
class Friend:
    username: str
    fullname: Optional[str] = None
    foreground: Optional[str] = None   # HTML colour, e.g. '#ff0000'
    background: Optional[str] = None
    groupmask: Optional[int] = None
    type: FriendType = FriendType.USER

    @classmethod
    def from_response(cls, view: FieldView) -> "Friend":
        raw_type = view["type"]
        if raw_type is None:
            ftype = FriendType.USER
        else:
            try:
                ftype = FriendType(raw_type)
            except ValueError:
                raise DecodeError(f"unknown friend type: {raw_type!r}")
        return cls(
            username=view["user"] or "",
            fullname=view["name"],
            foreground=view["fg"],
            background=view["bg"],
            groupmask=view.get_int("groupmask"),
            type=ftype,
        )

    def __str__(self) -> str:
        return f"{self.username}: {self.fullname}"


def _friends(result: FlatResponse, base: str) -> List[Friend]:
    return [Friend.from_response(view) for view in result.each(base)]


def get_friends(client: ProtocolClient, include_friendofs: bool = False) -> Tuple[List[Friend], List[Friend]]:
    """Returns (friends, friend-ofs); the second list is empty unless asked for."""
    params = {"includefriendof": True} if include_friendofs else {}
    result = client.call("getfriends", params)
    return _friends(result, "friend"), _friends(result, "friendof")


def get_friendofs(client: ProtocolClient) -> List[Friend]:
    return _friends(client.call("friendof"), "friendof")


class FriendsWatcher:
    """Polls for new posts on the friends page.

    The server tells us how long to wait between polls; ``interval`` holds
    that value.  Waiting is up to the caller::

        watcher = FriendsWatcher(client)
        while not watcher.poll():
            time.sleep(watcher.interval)

    To keep state across runs, save ``lastupdate`` and pass it back in.
    """

    def __init__(self, client: ProtocolClient, lastupdate: Optional[str] = None):
        self.client = client
        self.lastupdate = lastupdate
        self.interval = DEFAULT_POLL_INTERVAL

    def poll(self) -> bool:
        params = {"lastupdate": self.lastupdate} if self.lastupdate else {}
        result = self.client.call("checkfriends", params)
        self.lastupdate = result.get("lastupdate")
        self.interval = result.get_int("interval", DEFAULT_POLL_INTERVAL)
        log.debug("checkfriends: new=%s interval=%s", result.get("new"), self.interval)
        return result.get("new") == "1"
