import sys
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

# Ensure the repo root is on sys.path for absolute imports.
REPO_ROOT = Path(__file__).resolve().parents[1]
repo_root_str = str(REPO_ROOT)
if repo_root_str not in sys.path:
    sys.path.insert(0, repo_root_str)

from ljsync.auth import Credential, derive_auth_response  # noqa: E402
from ljsync.protocol import ProtocolClient  # noqa: E402

CHALLENGE = "c0:1073113200:2831:60:2TCbFBYR72f2jhVDuowz:0fba728f5964ea54160a5b18317d92df"


def flat(fields) -> str:
    out = []
    for key, value in fields.items():
        out.append(str(key))
        out.append("" if value is None else str(value))
    return "\n".join(out) + "\n"


class FakeResponse:
    def __init__(self, body="", status_code=200):
        self.status_code = status_code
        if isinstance(body, bytes):
            self.content = body
            self.text = body.decode("utf-8")
        else:
            self.text = body
            self.content = body.encode("utf-8")

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Stands in for requests.Session; routes to a handler per verb."""

    def __init__(self, on_post=None, on_get=None):
        self.on_post = on_post
        self.on_get = on_get
        self.posts = []
        self.gets = []
        self.closed = False

    def post(self, url, data=None, timeout=None, headers=None):
        fields = {k: v[0] for k, v in parse_qs(data, keep_blank_values=True).items()}
        self.posts.append(fields)
        return self.on_post(fields)

    def get(self, url, timeout=None, headers=None):
        parts = urlsplit(url)
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}
        self.gets.append((params, dict(headers or {})))
        return self.on_get(params, headers or {})

    def close(self):
        self.closed = True

    def modes(self):
        return [p["mode"] for p in self.posts]


class FakeJournal:
    """A tiny journal server speaking the flat protocol and the comment export.

    ``items`` is a list of (key, time) sync items, ``entries`` maps itemid to
    the ``events_N_*`` fields (without the prefix) plus optional ``props``.
    """

    def __init__(self, password="secret", items=(), entries=None, comments=None,
                 usermap=None, list_page=2, fetch_page=2, comment_page=2, maxid=None):
        self.password = password
        self.items = sorted(items, key=lambda kv: kv[1])
        self.entries = entries or {}
        self.comments = comments or {}
        self.usermap = usermap or {}
        self.list_page = list_page
        self.fetch_page = fetch_page
        self.comment_page = comment_page
        self.maxid = maxid if maxid is not None else max(self.comments, default=0)
        self.export_starts = []
        self.sessions_issued = 0
        self.session = FakeSession(self.handle_post, self.handle_get)

    def client(self, username="someone", usejournal=None):
        return ProtocolClient(Credential(username, self.password, usejournal), session=self.session)

    # -- flat protocol --

    def handle_post(self, req):
        mode = req["mode"]
        if mode == "getchallenge":
            return FakeResponse(flat({"challenge": CHALLENGE, "success": "OK"}))
        if req.get("auth_response") != derive_auth_response(CHALLENGE, self.password):
            return FakeResponse(flat({"success": "FAIL", "errmsg": "Invalid password"}))
        handler = getattr(self, f"mode_{mode}")
        result = handler(req)
        result.setdefault("success", "OK")
        return FakeResponse(flat(result))

    def _after(self, lastsync):
        return [(k, t) for k, t in self.items if not lastsync or t > lastsync]

    def mode_syncitems(self, req):
        remaining = self._after(req.get("lastsync"))
        page = remaining[:self.list_page]
        out = {"sync_total": len(remaining), "sync_count": len(page)}
        for i, (key, when) in enumerate(page, 1):
            out[f"sync_{i}_item"] = key
            out[f"sync_{i}_time"] = when
            out[f"sync_{i}_action"] = "update"
        return out

    def mode_getevents(self, req):
        assert req["selecttype"] == "syncitems"
        wanted = [int(k[2:]) for k, _ in self._after(req.get("lastsync")) if k.startswith("L-")]
        out = {}
        n = p = 0
        for itemid in wanted[:self.fetch_page]:
            fields = dict(self.entries[itemid])
            props = fields.pop("props", {})
            n += 1
            out[f"events_{n}_itemid"] = itemid
            for key, value in fields.items():
                out[f"events_{n}_{key}"] = value
            for name, value in props.items():
                p += 1
                out[f"prop_{p}_itemid"] = itemid
                out[f"prop_{p}_name"] = name
                out[f"prop_{p}_value"] = value
        out["events_count"] = n
        out["prop_count"] = p
        return out

    def mode_login(self, req):
        return {}

    def mode_sessiongenerate(self, req):
        self.sessions_issued += 1
        return {"ljsession": f"v1:u2:s{self.sessions_issued}:abc"}

    # -- comment export --

    def handle_get(self, params, headers):
        assert headers.get("Cookie", "").startswith("ljsession=")
        kind = params["get"].split("_", 1)[1]
        start = int(params["startid"])
        self.export_starts.append((kind, start))
        ids = sorted(cid for cid in self.comments if cid >= start)[:self.comment_page]
        return FakeResponse(self.render(kind, ids).encode("utf-8"))

    def render(self, kind, ids):
        out = ["<?xml version=\"1.0\" encoding='utf-8'?>", "<livejournal>"]
        if kind == "meta":
            out.append(f"<maxid>{self.maxid}</maxid>")
        out.append("<comments>")
        for cid in ids:
            c = self.comments[cid]
            if kind == "meta":
                attrs = " ".join(f"{k}='{v}'" for k, v in c.get("meta", {}).items())
                out.append(f"<comment id='{cid}' {attrs} />")
            else:
                attrs = " ".join(f"{k}='{v}'" for k, v in c.get("attrs", {}).items())
                children = "".join(f"<{k}>{v}</{k}>" for k, v in c.get("text", {}).items())
                out.append(f"<comment id='{cid}' {attrs}>{children}</comment>")
        out.append("</comments>")
        if kind == "meta" and self.usermap:
            out.append("<usermaps>")
            for uid, user in self.usermap.items():
                out.append(f"<usermap id='{uid}' user='{user}' />")
            out.append("</usermaps>")
        out.append("</livejournal>")
        return "\n".join(out)


@pytest.fixture
def fake_journal():
    return FakeJournal
