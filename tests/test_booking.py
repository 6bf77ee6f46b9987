import json

import pytest

from booking import (
    BookingParseError,
    BookingStreamFilter,
    OutcomeKind,
    is_booking_candidate,
    parse_booking_intent,
)
from errors import BookingError

PLACEHOLDER = "One moment while I book your appointment."

VALID_PAYLOAD = {
    "name": "Jane Doe",
    "age": 34,
    "contact_number": "555-0100",
    "medical_concern": "lower back pain",
    "appointment_datetime": "2026-10-20T10:00:00",
}


def booking_json(**payload_overrides) -> str:
    payload = {**VALID_PAYLOAD, **payload_overrides}
    return json.dumps({"action": "book_appointment", "payload": payload})


def feed_all(stream_filter, tokens):
    out = []
    for token in tokens:
        out.extend(stream_filter.feed(token))
    return out


def test_parse_valid_booking():
    intent = parse_booking_intent(booking_json(email="jane@example.com"))
    assert intent.action == "book_appointment"
    assert intent.payload.name == "Jane Doe"
    assert intent.payload.age == 34
    assert intent.payload.appointment_datetime.year == 2026
    assert intent.payload.email == "jane@example.com"
    assert intent.payload.doctor_preference is None


def test_parse_ignores_unknown_payload_fields():
    intent = parse_booking_intent(booking_json(insurance="acme"))
    assert not hasattr(intent.payload, "insurance")


def test_missing_fields_are_named():
    payload = dict(VALID_PAYLOAD)
    del payload["age"]
    del payload["contact_number"]
    text = json.dumps({"action": "book_appointment", "payload": payload})
    with pytest.raises(BookingError) as excinfo:
        parse_booking_intent(text)
    assert "age" in str(excinfo.value)
    assert "contact_number" in str(excinfo.value)


def test_age_must_be_an_integer():
    with pytest.raises(BookingError):
        parse_booking_intent(booking_json(age="thirty"))


def test_missing_payload_is_a_booking_error():
    with pytest.raises(BookingError):
        parse_booking_intent('{"action": "book_appointment"}')


def test_not_json_is_a_parse_error():
    with pytest.raises(BookingParseError):
        parse_booking_intent('{"action": "book_appointment", ')


def test_other_action_is_a_parse_error():
    with pytest.raises(BookingParseError):
        parse_booking_intent('{"action": "cancel_appointment", "payload": {}}')


def test_candidate_requires_leading_brace_and_marker():
    assert is_booking_candidate("  " + booking_json())
    assert not is_booking_candidate("I can book_appointment for you")
    assert not is_booking_candidate('{"action": "other"}')


# ---------------------------------------------------------------------------
# Stream filter
# ---------------------------------------------------------------------------

def test_plain_text_streams_through():
    f = BookingStreamFilter(PLACEHOLDER)
    out = feed_all(f, [" ", "Hello", " there"])
    assert out == [" Hello", " there"]
    assert not f.suppressing

    outcome = f.finish(" Hello there")
    assert outcome.kind is OutcomeKind.TEXT
    assert outcome.replay_text is None


def test_booking_json_never_streams():
    text = booking_json()
    tokens = [text[i:i + 7] for i in range(0, len(text), 7)]
    f = BookingStreamFilter(PLACEHOLDER)
    out = feed_all(f, tokens)
    assert out == [PLACEHOLDER]
    assert f.suppressing

    outcome = f.finish(text)
    assert outcome.kind is OutcomeKind.BOOKING
    assert outcome.intent.payload.contact_number == "555-0100"


def test_suspected_but_not_booking_is_replayed():
    f = BookingStreamFilter(PLACEHOLDER)
    assert feed_all(f, ["{hmm", " odd reply}"]) == [PLACEHOLDER]

    outcome = f.finish("{hmm odd reply}")
    assert outcome.kind is OutcomeKind.TEXT
    assert outcome.replay_text == "{hmm odd reply}"


def test_broken_booking_json_falls_back_to_text():
    text = '{"action": "book_appointment", "payload": {"name": '
    f = BookingStreamFilter(PLACEHOLDER)
    feed_all(f, [text])
    outcome = f.finish(text)
    assert outcome.kind is OutcomeKind.TEXT
    assert outcome.replay_text == text


def test_invalid_booking_payload_is_abandoned():
    text = booking_json(name="", age=-3)
    f = BookingStreamFilter(PLACEHOLDER)
    feed_all(f, [text])
    outcome = f.finish(text)
    assert outcome.kind is OutcomeKind.INVALID
    assert "name" in outcome.error
    assert "age" in outcome.error


def test_marker_inside_plain_text_is_not_a_booking():
    text = "Sure, I will book_appointment once you confirm."
    f = BookingStreamFilter(PLACEHOLDER)
    assert feed_all(f, [text]) == [text]
    assert f.finish(text).kind is OutcomeKind.TEXT


def test_whitespace_only_response_has_nothing_to_replay():
    f = BookingStreamFilter(PLACEHOLDER)
    assert feed_all(f, ["  ", "\n"]) == []
    outcome = f.finish("  \n")
    assert outcome.kind is OutcomeKind.TEXT
    assert outcome.replay_text is None


def test_unstreamed_text_is_replayed_on_finish():
    f = BookingStreamFilter(PLACEHOLDER)
    outcome = f.finish("Hello")
    assert outcome.replay_text == "Hello"


def test_custom_action_name():
    text = json.dumps({"action": "reserve_slot", "payload": VALID_PAYLOAD})
    f = BookingStreamFilter(PLACEHOLDER, action_name="reserve_slot")
    feed_all(f, [text])
    assert f.finish(text).kind is OutcomeKind.BOOKING
