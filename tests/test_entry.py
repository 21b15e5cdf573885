import datetime as dt
from urllib.parse import quote_plus

import pytest

from conftest import CHALLENGE, FakeResponse, FakeSession, flat
from ljsync.auth import Credential
from ljsync.entry import (
    CommentSetting, Entry, Screening, Security, edit_event, entries_from_response, get_event, post_event,
)
from ljsync.errors import AccidentalDeleteError, DecodeError, UnknownFieldError, UserError
from ljsync.protocol import ProtocolClient, decode_response

UTC = dt.timezone.utc


def server_echo(request, itemid=12, anum=34, extra_props=None):
    """What the server would send back from getevents for a posted request."""
    out = {
        "events_count": 1,
        "events_1_itemid": itemid,
        "events_1_anum": anum,
        "events_1_event": quote_plus(request["event"]),
        "events_1_subject": request["subject"] or "",
        "events_1_security": request["security"],
        "events_1_eventtime": "%04d-%02d-%02d %02d:%02d:00" % (
            request["year"], request["mon"], request["day"], request["hour"], request["min"]),
    }
    if "allowmask" in request:
        out["events_1_allowmask"] = request["allowmask"]
    props = {k[5:]: v for k, v in request.items() if k.startswith("prop_")}
    props.update(extra_props or {})
    n = 0
    for name, value in props.items():
        if value in (None, "", False):
            continue    # the server does not keep empty props
        n += 1
        out[f"prop_{n}_itemid"] = itemid
        out[f"prop_{n}_name"] = name
        out[f"prop_{n}_value"] = "1" if value is True else value
    out["prop_count"] = n
    return decode_response(flat(out))


ROUNDTRIP_ENTRIES = [
    Entry(subject="subject", event="event here", time=dt.datetime(2006, 1, 2, 3, 4, 59, tzinfo=UTC)),
    Entry(subject="subject here", event="eventblah here\nsecond line & more", comments=CommentSetting.NOEMAIL,
          preformatted=True, security=Security.FRIENDS, location="test",
          time=dt.datetime(2010, 5, 6, 7, 8, 9, tzinfo=UTC)),
    Entry(subject="tagged", event="x", taglist=["alpha", "beta gamma"], mood="sleepy", moodid=15,
          music="Low - Words", pickeyword="me", backdated=True, comments=CommentSetting.NONE,
          security=Security.CUSTOM, allowmask=6, screening=Screening.ANONYMOUS,
          time=dt.datetime(1999, 12, 31, 23, 59, tzinfo=UTC)),
    Entry(subject="", event="private", security=Security.PRIVATE, screening=Screening.NONE,
          time=dt.datetime(2003, 3, 3, 3, 3, 3, tzinfo=UTC)),
    Entry(subject="unsorted", event="y", taglist=["zebra", "apple pie"],
          time=dt.datetime(2012, 2, 2, 2, 2, tzinfo=UTC)),
]


@pytest.mark.parametrize("entry", ROUNDTRIP_ENTRIES)
def test_roundtrip_through_request_and_response(entry):
    decoded = entries_from_response(server_echo(entry.to_request()))[12]
    assert decoded == entry
    assert decoded.time == entry.time.replace(second=0)
    assert (decoded.itemid, decoded.anum) == (12, 34)


def test_equality_ignores_seconds_but_not_minutes():
    a = Entry(event="x", time=dt.datetime(2006, 1, 1, 10, 0, 1, tzinfo=UTC))
    b = Entry(event="x", time=dt.datetime(2006, 1, 1, 10, 0, 59, tzinfo=UTC))
    c = Entry(event="x", time=dt.datetime(2006, 1, 1, 10, 1, 0, tzinfo=UTC))
    assert a == b
    assert a != c


def test_unknown_props_are_kept_when_not_strict():
    request = ROUNDTRIP_ENTRIES[0].to_request()
    entry = entries_from_response(server_echo(request, extra_props={"revnum": "3", "shiny_new": "yes"}))[12]
    assert entry.props == {"revnum": "3", "shiny_new": "yes"}


def test_strict_mode_rejects_unknown_props():
    request = ROUNDTRIP_ENTRIES[0].to_request()
    with pytest.raises(UnknownFieldError) as excinfo:
        entries_from_response(server_echo(request, extra_props={"shiny_new": "yes"}), strict=True)
    assert excinfo.value.name == "shiny_new"


def test_strict_mode_keeps_known_extra_props():
    request = ROUNDTRIP_ENTRIES[0].to_request()
    entry = entries_from_response(server_echo(request, extra_props={"revtime": "1136171000"}), strict=True)[12]
    assert entry.props == {"revtime": "1136171000"}


def test_bad_screening_value():
    with pytest.raises(DecodeError):
        Entry().load_prop("opt_screening", "Z")


def test_prop_for_missing_event_is_a_decode_error():
    result = decode_response(flat({"events_count": 0, "prop_count": 1, "prop_1_itemid": 5,
                                   "prop_1_name": "current_music", "prop_1_value": "x"}))
    with pytest.raises(DecodeError):
        entries_from_response(result)


@pytest.mark.parametrize("fields", [
    {"events_count": 1, "events_1_itemid": "x1"},
    {"events_count": 1, "events_1_itemid": 3, "events_1_anum": "a"},
    {"events_count": 1, "events_1_itemid": 3, "events_1_security": "usemask", "events_1_allowmask": "many"},
    {"events_count": 1, "events_1_itemid": 3,
     "prop_count": 1, "prop_1_itemid": "3x", "prop_1_name": "current_music", "prop_1_value": "x"},
    {"events_count": 1, "events_1_itemid": 3,
     "prop_count": 1, "prop_1_itemid": 3, "prop_1_name": "current_moodid", "prop_1_value": "happy"},
])
def test_malformed_numbers_are_decode_errors(fields):
    with pytest.raises(DecodeError):
        entries_from_response(decode_response(flat(fields)))


def test_tag_order_does_not_matter():
    assert Entry(taglist=["b", "a"]) == Entry(taglist=["a", "b"])
    assert Entry(taglist=["a"]) != Entry(taglist=["a", "b"])


def test_display_itemid_and_url():
    entry = Entry(itemid=1, anum=200)
    assert entry.display_itemid == 456
    assert entry.url("some_user") == "https://some-user.livejournal.com/456.html"


def test_to_request_requires_a_time():
    with pytest.raises(UserError):
        Entry(event="x").to_request()


def recording_client(response_fields):
    def on_post(fields):
        if fields["mode"] == "getchallenge":
            return FakeResponse(flat({"challenge": CHALLENGE, "success": "OK"}))
        return FakeResponse(flat(dict(response_fields, success="OK")))
    session = FakeSession(on_post=on_post)
    return ProtocolClient(Credential("alice", "pw"), session=session), session


def test_post_event_fills_in_ids():
    client, session = recording_client({"itemid": 77, "anum": 9})
    entry = post_event(client, Entry(subject="s", event="e", time=dt.datetime(2020, 1, 1, tzinfo=UTC)))
    assert (entry.itemid, entry.anum) == (77, 9)
    sent = session.posts[-1]
    assert sent["mode"] == "postevent"
    assert (sent["year"], sent["mon"], sent["day"]) == ("2020", "1", "1")
    assert sent["prop_opt_preformatted"] == "0"


def test_edit_with_empty_event_is_refused_without_delete():
    client, session = recording_client({})
    entry = Entry(itemid=5, event="", time=dt.datetime(2020, 1, 1, tzinfo=UTC))
    with pytest.raises(AccidentalDeleteError):
        edit_event(client, entry)
    assert session.posts == []


def test_edit_with_delete_sends_empty_event():
    client, session = recording_client({})
    edit_event(client, Entry(itemid=5), delete=True)
    assert session.posts[-1]["mode"] == "editevent"
    assert session.posts[-1]["event"] == ""
    assert session.posts[-1]["itemid"] == "5"


def test_edit_sends_the_whole_entry():
    client, session = recording_client({})
    edit_event(client, Entry(itemid=5, event="new text", time=dt.datetime(2020, 1, 1, tzinfo=UTC)))
    assert session.posts[-1]["event"] == "new text"


def test_get_event_single():
    request = ROUNDTRIP_ENTRIES[1].to_request()
    fields = dict(server_echo(request))
    fields.pop("success", None)
    client, session = recording_client(fields)
    entry = get_event(client, 12)
    assert entry == ROUNDTRIP_ENTRIES[1]
    assert session.posts[-1]["selecttype"] == "one"
    assert get_event(client, 13) is None
