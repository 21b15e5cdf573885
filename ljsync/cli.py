#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Sync a journal's entries and comments and dump them to a JSON file.

A sync can be stopped at any page and resumed: the export file remembers where
it got to, and running the same command again picks up from there (including
anything posted since).

Usage:
  pip install ljsync
  LJ_PASSWORD=... ljsync export someuser -o someuser.json
  ljsync export someuser -o someuser.json                 # later: fetches only what changed
  ljsync export someuser -o someuser.json --lastsync ""   # entries from scratch
  ljsync login someuser
  ljsync friends someuser --friendofs
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from . import __version__
from .account import get_friends, login
from .auth import Credential
from .comments import DECODERS, DEFAULT_DECODER, get_decoder
from .errors import LJError, ProtocolError, TransportError, UserError
from .protocol import DEFAULT_SERVER, DEFAULT_TIMEOUT, HEADERS_DEFAULT, ProtocolClient, wire_int
from .storage import BODY_START_KEY, COMMENT_START_KEY, LASTSYNC_KEY, MAXID_KEY, MemoryStore, Storage
from .sync import CommentSyncCursor, EntrySyncCursor

log = logging.getLogger("ljsync")

# ---------------------- Collection ----------------------

def collect_journal(client: ProtocolClient, store: Storage, strict: bool = False,
                    decoder_name: Optional[str] = None, comment_start: int = 0,
                    body_start: int = 0, maxid: Optional[int] = None) -> Dict[str, Any]:
    # 1) entries
    entries = EntrySyncCursor(client, store.get_meta(LASTSYNC_KEY), strict=strict)
    for page in entries:
        for entry in page.entries.values():
            store.store_entry(entry)
        store.set_meta(LASTSYNC_KEY, page.resume_token)
        log.info("entries %s: %d/%d", page.state.value, page.progress.fetched, page.progress.total)

    # 2) comments, metadata then bodies
    comments = CommentSyncCursor(client, get_decoder(decoder_name), max_comment_id=maxid,
                                 meta_start=comment_start, body_start=body_start)
    for page in comments:
        store.store_usermap(page.usermap)
        store.store_comments(page.comments, meta_only=page.meta_only)
        if comments.max_comment_id is not None:
            store.set_meta(MAXID_KEY, str(comments.max_comment_id))
        store.set_meta(COMMENT_START_KEY, str(comments.meta_start))
        store.set_meta(BODY_START_KEY, str(comments.body_start))
        log.info("comments %s: %d/%d", page.state.value, page.progress.fetched, page.progress.total)

    return {
        "lastsync": entries.resume_token,
        "maxid": comments.max_comment_id,
        "comment_start": comments.meta_start,
        "body_start": comments.body_start,
    }

# ---------------------- CLI -----------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="ljsync", description="Incremental journal sync (entries and comments).")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("username", help="Account to log in as")
        p.add_argument("--password", default=None, help="Password (default: $LJ_PASSWORD)")
        p.add_argument("--usejournal", default=None, help="Act on this journal instead (e.g. a community)")
        p.add_argument("--server", default=DEFAULT_SERVER, help=f"Server URL (default {DEFAULT_SERVER})")
        p.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT,
                       help=f"HTTP timeout in seconds per request (default {DEFAULT_TIMEOUT})")
        p.add_argument("--user-agent", default=None, help="Override default User-Agent")
        p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    p = sub.add_parser("export", help="Sync entries and comments into a JSON file")
    common(p)
    p.add_argument("-o", "--output", default=None,
                   help="Output filename (default: USERNAME.json); an existing export is updated")
    p.add_argument("--lastsync", default=None,
                   help="Resume entries from this token (default: from the output file; \"\" for a full sync)")
    p.add_argument("--comment-start", type=int, default=None,
                   help="Resume the comment metadata pass at this id (default: from the output file)")
    p.add_argument("--body-start", type=int, default=None,
                   help="Resume the comment body pass at this id (default: from the output file)")
    p.add_argument("--maxid", type=int, default=None, help="Highest comment id seen so far (the server may know a higher one)")
    p.add_argument("--strict", action="store_true", help="Fail on entry properties ljsync does not know")
    p.add_argument("--decoder", choices=sorted(DECODERS), default=DEFAULT_DECODER,
                   help=f"Comment export parser (default {DEFAULT_DECODER})")

    p = sub.add_parser("login", help="Check the password and show the account name")
    common(p)

    p = sub.add_parser("friends", help="List friends")
    common(p)
    p.add_argument("--friendofs", action="store_true", help="Also list who friended this account")
    return ap


def make_client(args: argparse.Namespace) -> ProtocolClient:
    password = args.password if args.password is not None else os.environ.get("LJ_PASSWORD")
    if not password:
        print("Error: no password (use --password or LJ_PASSWORD)", file=sys.stderr)
        sys.exit(2)
    if not (args.server.startswith("http://") or args.server.startswith("https://")):
        print("Error: server must start with http(s)://", file=sys.stderr)
        sys.exit(2)
    headers = dict(HEADERS_DEFAULT)
    if args.user_agent:
        headers["User-Agent"] = args.user_agent
    credential = Credential(args.username, password, args.usejournal)
    return ProtocolClient(credential, server=args.server, timeout=args.timeout, headers=headers)


def load_store(path: str) -> MemoryStore:
    if not os.path.exists(path):
        return MemoryStore()
    try:
        with open(path, "r", encoding="utf-8") as f:
            return MemoryStore.from_dict(json.load(f))
    except (ValueError, TypeError, KeyError) as e:
        raise UserError(f"{path} is not an ljsync export: {e}") from e


def _meta_int(store: Storage, key: str, given: Optional[int]) -> Optional[int]:
    if given is not None:
        return given
    return wire_int(store.get_meta(key), key)


def cmd_export(client: ProtocolClient, args: argparse.Namespace) -> None:
    out_path = args.output or f"{args.usejournal or args.username}.json"
    store = load_store(out_path)
    if args.lastsync is not None:
        store.set_meta(LASTSYNC_KEY, args.lastsync or None)

    # Whatever was synced before a failure is still written out.
    try:
        collect_journal(client, store, strict=args.strict, decoder_name=args.decoder,
                        comment_start=_meta_int(store, COMMENT_START_KEY, args.comment_start) or 0,
                        body_start=_meta_int(store, BODY_START_KEY, args.body_start) or 0,
                        maxid=_meta_int(store, MAXID_KEY, args.maxid))
    finally:
        with open(out_path, "w", encoding="utf-8") as f:
            json.dump(store.to_dict(), f, ensure_ascii=False, indent=1)

        print(f"✅ Wrote {out_path}")
        print(f"   Entries: {len(store.entries)} • Comments: {len(store.comments)} • Users: {len(store.users)}")
        print(f"   Resume with: --lastsync {json.dumps(store.get_meta(LASTSYNC_KEY) or '')} "
              f"--comment-start {store.get_meta(COMMENT_START_KEY) or 0} "
              f"--body-start {store.get_meta(BODY_START_KEY) or 0}")


def cmd_login(client: ProtocolClient, args: argparse.Namespace) -> None:
    print(f"{args.username}: {login(client) or ''}")


def cmd_friends(client: ProtocolClient, args: argparse.Namespace) -> None:
    friends, friendofs = get_friends(client, include_friendofs=args.friendofs)
    for friend in friends:
        print(f"{friend.username}\t{friend.type.value}\t{friend.fullname or ''}")
    if args.friendofs:
        print(f"# friend of: {len(friendofs)}")
        for friend in friendofs:
            print(f"{friend.username}\t{friend.type.value}\t{friend.fullname or ''}")


COMMANDS = {
    "export": cmd_export,
    "login": cmd_login,
    "friends": cmd_friends,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s  %(message)s", datefmt="%H:%M:%S")

    client = make_client(args)
    try:
        with client:
            COMMANDS[args.command](client, args)
    except TransportError as e:
        print(f"Request error: {e}", file=sys.stderr); sys.exit(1)
    except ProtocolError as e:
        print(f"Server error: {e}", file=sys.stderr); sys.exit(1)
    except LJError as e:
        print(f"Error: {e}", file=sys.stderr); sys.exit(1)

if __name__ == "__main__":
    main()
