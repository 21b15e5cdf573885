"""Incremental journal sync.

Entries and comments replicate through two unrelated pagination schemes:

* entries: ``syncitems`` lists ``(item, time)`` pairs page by page, then
  ``getevents`` in syncitems mode retrieves bodies in time order;
* comments: the export endpoint is walked by comment id twice, once for
  metadata and once for bodies, and the halves are merged.

Both cursors advance one page per ``advance()`` call, so a caller can stop
between any two pages.  Nothing here retries or persists anything; the caller
saves ``resume_token`` (entries) or ``meta_start``/``body_start``/
``max_comment_id`` (comments) after a page it has fully stored.

Cursors are not thread safe.
"""

import enum
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, Optional

from .comments import CommentExportPage, CommentPartial, Decoder, get_decoder, merge_comment
from .entry import Entry, entries_from_response, merge_entry
from .errors import SyncInconsistencyError
from .protocol import ProtocolClient

log = logging.getLogger(__name__)

SYNC_ITEM_RE = re.compile(r"^(.)-(\d+)$")
ENTRY_ITEM_TYPE = "L"


@dataclass
class Progress:
    fetched: int
    total: int

# ---------------------- Entries --------------------------

class EntrySyncState(enum.Enum):
    LISTING = "listing"
    FETCHING = "fetching"
    DONE = "done"


@dataclass
class EntrySyncPage:
    state: EntrySyncState
    progress: Progress
    resume_token: Optional[str]
    entries: Dict[int, Entry] = field(default_factory=dict)


def parse_sync_item(key: str):
    """``"L-12"`` -> ``("L", 12)``; None for anything else."""
    m = SYNC_ITEM_RE.match(key or "")
    if not m:
        return None
    return m.group(1), int(m.group(2))


class EntrySyncCursor:
    """Lists changed items, then fetches the journal entries among them.

    ``resume_token`` only moves past items whose entries have been handed
    out (or which are not entries at all), so persisting it at any page
    boundary is safe.
    """

    def __init__(self, client: ProtocolClient, resume_token: Optional[str] = None, strict: bool = False):
        self.client = client
        self.strict = strict
        self.state = EntrySyncState.LISTING
        self.resume_token = resume_token
        self._start_token = resume_token
        self._listing_token = resume_token
        self._listed: Dict[str, str] = {}
        self._listed_count = 0
        self._grand_total: Optional[int] = None
        self.pending: Dict[int, str] = {}
        self._stub_total = 0
        self._fetched = 0

    @property
    def done(self) -> bool:
        return self.state is EntrySyncState.DONE

    def advance(self) -> EntrySyncPage:
        if self.state is EntrySyncState.LISTING:
            return self._list_page()
        if self.state is EntrySyncState.FETCHING:
            return self._fetch_page()
        raise RuntimeError("entry sync is already done")

    def __iter__(self) -> Iterator[EntrySyncPage]:
        while not self.done:
            yield self.advance()

    def _list_page(self) -> EntrySyncPage:
        params = {"lastsync": self._listing_token} if self._listing_token else {}
        result = self.client.call("syncitems", params)
        page_total = result.get_int("sync_total", 0)

        new_items: Dict[str, str] = {}
        redelivered = 0
        for view in result.each("sync"):
            key, when = view["item"], view["time"]
            if key is None or when is None:
                continue
            if key in self._listed or key in new_items:
                redelivered += 1
                continue
            new_items[key] = when
        self._check_total(page_total, redelivered, len(new_items))

        self._listed.update(new_items)
        self._listed_count += len(new_items)
        for when in new_items.values():
            if self._listing_token is None or when > self._listing_token:
                self._listing_token = when
        log.debug("syncitems: %d/%d listed", self._listed_count, self._grand_total)

        if self._listed_count >= self._grand_total:
            for key, when in self._listed.items():
                parsed = parse_sync_item(key)
                if parsed and parsed[0] == ENTRY_ITEM_TYPE:
                    self.pending[parsed[1]] = when
            self._stub_total = len(self.pending)
            self._listed.clear()
            if self.pending:
                self.state = EntrySyncState.FETCHING
            else:
                self.resume_token = self._listing_token
                self.state = EntrySyncState.DONE
        return EntrySyncPage(self.state, Progress(self._listed_count, self._grand_total), self.resume_token)

    def _check_total(self, page_total: int, redelivered: int, new: int) -> None:
        # sync_total counts what is left after the token we sent, re-sent
        # items included; a server that reports the session-wide total on
        # every page is accepted as well.
        if self._grand_total is None:
            self._grand_total = page_total
        else:
            remaining = self._grand_total - self._listed_count + redelivered
            if page_total not in (self._grand_total, remaining):
                raise SyncInconsistencyError(
                    f"syncitems total changed: expected {remaining} (of {self._grand_total}), got {page_total}"
                )
        if self._listed_count + new > self._grand_total:
            raise SyncInconsistencyError(
                f"syncitems delivered {self._listed_count + new} items of {self._grand_total}"
            )
        if new == 0 and self._listed_count < self._grand_total:
            raise SyncInconsistencyError(
                f"syncitems stalled at {self._listed_count} of {self._grand_total}"
            )

    def _fetch_page(self) -> EntrySyncPage:
        params = {"selecttype": "syncitems", "lineendings": "unix"}
        if self._start_token:
            params["lastsync"] = self._start_token
        entries = entries_from_response(self.client.call("getevents", params), self.strict)

        page: Dict[int, Entry] = {}
        retrieved = 0
        for itemid, entry in entries.items():
            page[itemid] = merge_entry(page.get(itemid), entry)
            when = self.pending.pop(itemid, None)
            if when is None:
                continue
            retrieved += 1
            if self._start_token is None or when > self._start_token:
                self._start_token = when
        if retrieved == 0:
            raise SyncInconsistencyError(
                f"getevents returned none of the {len(self.pending)} pending entries"
            )
        self._fetched += retrieved

        if self.pending:
            self.resume_token = self._start_token
        else:
            self.resume_token = self._listing_token
            self.state = EntrySyncState.DONE
        log.debug("getevents: %d/%d fetched", self._fetched, self._stub_total)
        return EntrySyncPage(self.state, Progress(self._fetched, self._stub_total), self.resume_token, page)

# ---------------------- Comments -------------------------

class CommentSyncState(enum.Enum):
    META = "meta"
    BODY = "body"
    DONE = "done"


@dataclass
class CommentSyncPage:
    state: CommentSyncState   # the pass this page belonged to
    progress: Progress        # (last comment id seen, max comment id)
    comments: Dict[int, CommentPartial]
    usermap: Dict[int, str]

    @property
    def meta_only(self) -> bool:
        return self.state is CommentSyncState.META


class CommentSyncCursor:
    """Walks the comment export by id: a metadata pass, then a body pass.

    Metadata pages are handed out as they come and kept so that the body
    pass can merge into them; merged comments leave the cursor with the
    body page that completed them.

    ``max_comment_id`` from an earlier run is only a starting guess: the
    first metadata page always goes to the server, and the ``maxid`` it
    reports replaces the guess when it is higher.
    """

    def __init__(self, client: ProtocolClient, decoder: Optional[Decoder] = None,
                 max_comment_id: Optional[int] = None, meta_start: int = 0, body_start: int = 0):
        self.client = client
        self.decoder = decoder or get_decoder()
        self.max_comment_id = max_comment_id
        self.meta_start = meta_start
        self.body_start = body_start
        self.state = CommentSyncState.META
        self._ljsession: Optional[str] = None
        self._maxid_seen = False
        self._accumulated: Dict[int, CommentPartial] = {}

    @property
    def done(self) -> bool:
        return self.state is CommentSyncState.DONE

    def advance(self) -> CommentSyncPage:
        if self.state is CommentSyncState.META:
            return self._meta_page()
        if self.state is CommentSyncState.BODY:
            return self._body_page()
        raise RuntimeError("comment sync is already done")

    def __iter__(self) -> Iterator[CommentSyncPage]:
        while not self.done:
            yield self.advance()

    def _fetch(self, kind: str, start: int) -> CommentExportPage:
        if self._ljsession is None:
            self._ljsession = self.client.generate_session()
        page = self.decoder.decode(self.client.export_comments(kind, start, self._ljsession))
        last = page.last_id()
        if last is not None and last < start:
            raise SyncInconsistencyError(f"comment_{kind} from {start} went back to {last}")
        if page.max_comment_id is not None and not self._maxid_seen:
            self._maxid_seen = True
            if self.max_comment_id is None or page.max_comment_id > self.max_comment_id:
                self.max_comment_id = page.max_comment_id
        return page

    def _exhausted(self, start: int) -> bool:
        return self.max_comment_id is not None and start > self.max_comment_id

    def _meta_page(self) -> CommentSyncPage:
        page = self._fetch("meta", self.meta_start)
        merged = {cid: merge_comment(self._accumulated.get(cid), partial)
                  for cid, partial in page.comments.items()}
        self._accumulated.update(merged)
        last = page.last_id()
        if last is not None:
            self.meta_start = last + 1
        if last is None or self.max_comment_id == 0 or self._exhausted(self.meta_start):
            self.state = CommentSyncState.BODY
            if self.max_comment_id == 0 or self._exhausted(self.body_start):
                self.state = CommentSyncState.DONE
        log.debug("comment meta: up to %s of %s", last, self.max_comment_id)
        return CommentSyncPage(
            CommentSyncState.META,
            Progress(last if last is not None else self.meta_start, self.max_comment_id or 0),
            {cid: replace(c) for cid, c in page.comments.items()},
            dict(page.usermap),
        )

    def _body_page(self) -> CommentSyncPage:
        page = self._fetch("body", self.body_start)
        # Nothing is dropped from the accumulator until the whole page has
        # merged, so a failed page can be retried against the same metadata.
        completed = {cid: merge_comment(self._accumulated.get(cid), partial)
                     for cid, partial in page.comments.items()}
        for cid in completed:
            self._accumulated.pop(cid, None)
        last = page.last_id()
        if last is not None:
            self.body_start = last + 1
        if last is None or self._exhausted(self.body_start):
            self.state = CommentSyncState.DONE
            self._accumulated.clear()
        log.debug("comment body: up to %s of %s", last, self.max_comment_id)
        return CommentSyncPage(
            CommentSyncState.BODY,
            Progress(last if last is not None else self.body_start, self.max_comment_id or 0),
            completed,
            dict(page.usermap),
        )
