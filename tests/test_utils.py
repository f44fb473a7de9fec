from __future__ import annotations

from datetime import datetime, timedelta, timezone

from markupsafe import Markup

from ngevent.utils import (
    EVENT_ID_ALPHABET,
    fill_placeholders,
    fill_template_placeholders,
    format_event_date,
    format_event_time,
    generate_event_id,
    is_valid_email,
    is_valid_event_id,
    normalize_email,
    parse_iso_datetime,
    render_message_html,
    to_naive_utc,
)


def test_generate_event_id_uses_unambiguous_alphabet():
    for _ in range(50):
        event_id = generate_event_id()
        assert len(event_id) == 6
        assert set(event_id) <= set(EVENT_ID_ALPHABET)
        assert is_valid_event_id(event_id)
    for ambiguous in "01OIL":
        assert ambiguous not in EVENT_ID_ALPHABET


def test_is_valid_event_id_rejects_bad_shapes():
    assert not is_valid_event_id(None)
    assert not is_valid_event_id("abc234")
    assert not is_valid_event_id("ABC23")
    assert not is_valid_event_id("ABC2340")
    assert not is_valid_event_id("ABC10O")


def test_email_helpers():
    assert is_valid_email(" person@example.com ")
    assert not is_valid_email("person@example")
    assert not is_valid_email("two words@example.com")
    assert not is_valid_email(None)
    assert normalize_email("  Person@Example.COM ") == "person@example.com"
    assert normalize_email(None) == ""


def test_parse_iso_datetime_normalizes_to_naive_utc():
    assert parse_iso_datetime("2026-05-01T10:00:00Z") == datetime(2026, 5, 1, 10, 0)
    assert parse_iso_datetime("2026-05-01T17:00:00+07:00") == datetime(2026, 5, 1, 10, 0)
    assert parse_iso_datetime("2026-05-01T10:00:00") == datetime(2026, 5, 1, 10, 0)

    aware = datetime(2026, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_naive_utc(aware) == datetime(2026, 5, 1, 10, 0)


def test_fill_placeholders_leaves_unknown_tokens():
    text = "Hi {firstName}, {eventTitle} starts soon. {unknown}"
    filled = fill_placeholders(text, {"firstName": "Budi", "eventTitle": "Meetup"})
    assert filled == "Hi Budi, Meetup starts soon. {unknown}"


def test_fill_template_placeholders_blanks_unknown_tokens():
    text = "Hello {{user_name}} / {{ event_title }} / {{missing}}"
    filled = fill_template_placeholders(text, {"user_name": "Sari", "event_title": "Expo"})
    assert filled == "Hello Sari / Expo / "


def test_render_message_html_escapes_and_keeps_line_breaks():
    rendered = render_message_html("Line <b>one</b>\nLine two\n")
    assert isinstance(rendered, Markup)
    assert rendered == "Line &lt;b&gt;one&lt;/b&gt;<br>Line two"
    assert render_message_html(None) == ""


def test_event_date_formats():
    value = datetime(2026, 3, 14, 9, 5)
    assert format_event_date(value) == "Saturday, 14 March 2026"
    assert format_event_time(value) == "09:05 UTC"
    assert format_event_date(None) == ""
