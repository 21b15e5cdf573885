"""Flat protocol client.

Requests are form-encoded ``key=value`` pairs POSTed to ``/interface/flat``;
responses are alternating key and value lines.  Repeated records come back
as ``base_N_field`` keys next to a ``base_count`` key.
"""

import datetime as dt
import logging
import re
from typing import Any, Dict, Iterator, Mapping, Optional
from urllib.parse import quote, urlencode

import requests

from .auth import Credential, auth_fields
from .errors import DecodeError, ProtocolError, TransportError, UserError

log = logging.getLogger(__name__)

DEFAULT_SERVER = "https://www.livejournal.com"
FLAT_PATH = "/interface/flat"
EXPORT_PATH = "/export_comments.bml"
CLIENT_VERSION = "Python-ljsync/0.3"
PROTOCOL_VERSION = "1"
DEFAULT_TIMEOUT = 25

HEADERS_DEFAULT = {
    "Accept": "text/plain, */*",
    "User-Agent": "ljsync/0.3 (+https://pypi.org/project/ljsync/)",
}

BASE_KEYS = ("mode", "ver", "clientversion")
AUTH_KEYS = ("user", "auth_method", "auth_challenge", "auth_response", "usejournal")

LINE_RE = re.compile(r"\r?\n")

# ---------------------- Times ---------------------------

# Journal times carry no zone; they are what the author saw on the clock.
# ljsync pretends they are UTC so that they compare and store cleanly.

def coerce_utc(when: dt.datetime) -> dt.datetime:
    """Relabel a wall-clock time as UTC without shifting it."""
    return when.replace(tzinfo=dt.timezone.utc)

def time_to_ljtime(when: dt.datetime) -> str:
    return when.strftime("%Y-%m-%d %H:%M:%S")

def ljtime_to_time(text: str) -> dt.datetime:
    try:
        parsed = dt.datetime.strptime(text[:16], "%Y-%m-%d %H:%M")
    except (TypeError, ValueError):
        raise DecodeError(f"bad journal time: {text!r}")
    return coerce_utc(parsed)

# ---------------------- Wire format ---------------------

def _wire_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)

def encode_request(fields: Mapping[str, Any]) -> str:
    return urlencode([(k, _wire_value(v)) for k, v in fields.items()], quote_via=quote)

def wire_int(raw: Optional[str], what: str, default: Optional[int] = None) -> Optional[int]:
    """Numeric wire value; empty or absent gives ``default``."""
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise DecodeError(f"bad integer for {what}: {raw!r}")

def decode_response(text: str) -> "FlatResponse":
    if text.endswith("\n"):
        text = text[:-2] if text.endswith("\r\n") else text[:-1]
    lines = LINE_RE.split(text) if text else []
    if len(lines) % 2:
        raise DecodeError(f"odd number of lines in flat response ({len(lines)})")
    return FlatResponse(zip(lines[0::2], lines[1::2]))


class FieldView:
    """One record of a wire array: ``view["name"]`` reads ``base_N_name``."""

    def __init__(self, prefix: str, data: Mapping[str, str]):
        self.prefix = prefix
        self._data = data

    def __getitem__(self, key: str) -> Optional[str]:
        return self._data.get(self.prefix + key)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._data.get(self.prefix + key, default)

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        return wire_int(self[key], self.prefix + key, default)

    def __repr__(self) -> str:
        return f"FieldView({self.prefix!r})"


class FlatResponse(dict):
    """Decoded response: a plain str -> str mapping plus array helpers."""

    @property
    def ok(self) -> bool:
        return self.get("success") == "OK"

    def count(self, base: str) -> int:
        return wire_int(self.get(f"{base}_count"), f"{base}_count", 0)

    def each(self, base: str) -> Iterator[FieldView]:
        for i in range(1, self.count(base) + 1):
            yield FieldView(f"{base}_{i}_", self)

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        return wire_int(self.get(key), key, default)

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise DecodeError(f"response is missing {key!r}")
        return value

# ---------------------- HTTP -----------------------------

class ProtocolClient:
    """Authenticated access to one journal server.

    ``session`` may be any object with ``requests.Session``'s ``post``/``get``
    signatures.  The client is cheap; use one per thread.
    """

    def __init__(self, credential: Optional[Credential] = None, server: str = DEFAULT_SERVER,
                 timeout: float = DEFAULT_TIMEOUT, headers: Optional[Dict[str, str]] = None,
                 session: Optional[requests.Session] = None):
        self.credential = credential
        self.server = server.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or HEADERS_DEFAULT)
        self.session = session or requests.Session()

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ProtocolClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def build_request(self, mode: str, params: Optional[Mapping[str, Any]] = None,
                      challenge: Optional[str] = None) -> Dict[str, Any]:
        request: Dict[str, Any] = {"mode": mode, "ver": PROTOCOL_VERSION, "clientversion": CLIENT_VERSION}
        reserved = BASE_KEYS
        if challenge is not None:
            if self.credential is None:
                raise UserError(f"{mode} needs a credential")
            request.update(auth_fields(self.credential, challenge))
            reserved = BASE_KEYS + AUTH_KEYS
        for key, value in (params or {}).items():
            if key in reserved:
                raise UserError(f"parameter {key!r} is reserved")
            request[key] = value
        return request

    def get_challenge(self) -> str:
        return self.call("getchallenge", requires_auth=False).require("challenge")

    def call(self, mode: str, params: Optional[Mapping[str, Any]] = None,
             requires_auth: bool = True) -> FlatResponse:
        if requires_auth and self.credential is None:
            raise UserError(f"{mode} needs a credential")
        challenge = self.get_challenge() if requires_auth else None
        request = self.build_request(mode, params, challenge)
        text = self._post(self.server + FLAT_PATH, encode_request(request))
        result = decode_response(text)
        log.debug("%s -> %s", mode, result.get("success"))
        if not result.ok:
            raise ProtocolError(result.get("errmsg"))
        return result

    def generate_session(self) -> str:
        """Ask for a web session cookie (used by the comment export)."""
        return self.call("sessiongenerate").require("ljsession")

    def export_comments(self, kind: str, start: int, ljsession: str) -> bytes:
        params = {"get": f"comment_{kind}", "startid": start}
        if self.credential and self.credential.usejournal:
            params["authas"] = self.credential.usejournal
        url = f"{self.server}{EXPORT_PATH}?{urlencode(params, quote_via=quote)}"
        headers = dict(self.headers)
        headers["Cookie"] = f"ljsession={ljsession}"
        try:
            r = self.session.get(url, timeout=self.timeout, headers=headers)
            r.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"GET {url}: {e}") from e
        log.debug("export %s from %d: %d bytes", kind, start, len(r.content))
        return r.content

    def _post(self, url: str, body: str) -> str:
        headers = dict(self.headers)
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        try:
            r = self.session.post(url, data=body, timeout=self.timeout, headers=headers)
            r.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"POST {url}: {e}") from e
        return r.text
