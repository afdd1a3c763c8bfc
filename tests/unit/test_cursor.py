import random
from datetime import datetime, timedelta, timezone

import pytest

from wikibase_change_capture.capture.errors import ContractError
from wikibase_change_capture.capture.model import (
    Change,
    Cursor,
    cursor_from_continuation,
    format_timestamp,
    parse_timestamp,
)

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _change(seq: int, seconds: int = 0, title: str = "Q1") -> Change:
    return Change(
        entity_title=title,
        revision_id=seq * 10,
        timestamp=T0 + timedelta(seconds=seconds),
        sequence_id=seq,
    )


@pytest.mark.unit
def test_advance_moves_forward_to_change_position():
    cursor = Cursor.since(T0)
    advanced = cursor.advance(_change(5, seconds=3))
    assert advanced == Cursor(T0 + timedelta(seconds=3), 5)
    assert cursor == Cursor(T0, 0)  # immutable


@pytest.mark.unit
def test_advance_ignores_older_change_without_error():
    cursor = Cursor(T0 + timedelta(seconds=10), 50)
    assert cursor.advance(_change(40, seconds=5)) is cursor
    assert cursor.advance(_change(49, seconds=10)) is cursor


@pytest.mark.unit
def test_advance_orders_by_timestamp_before_sequence():
    cursor = Cursor(T0, 100)
    later_but_lower_sequence = _change(90, seconds=1)
    assert cursor.advance(later_but_lower_sequence).sequence_id == 90


@pytest.mark.unit
def test_advance_is_idempotent_for_same_position():
    cursor = Cursor.since(T0).advance(_change(7, seconds=2))
    assert cursor.advance(_change(7, seconds=2)) == cursor


@pytest.mark.unit
def test_advance_never_regresses_under_shuffled_input():
    rng = random.Random(1234)
    changes = [_change(seq, seconds=seq // 3) for seq in range(1, 200)]
    for _ in range(20):
        rng.shuffle(changes)
        cursor = Cursor.since(T0)
        previous = cursor
        for change in changes:
            cursor = cursor.advance(change)
            assert cursor >= previous
            previous = cursor
        assert cursor == Cursor(T0 + timedelta(seconds=199 // 3), 199)


@pytest.mark.unit
def test_window_start_is_widened_by_safety_margin():
    cursor = Cursor(T0, 10)
    assert cursor.window_start(timedelta(seconds=30)) == T0 - timedelta(seconds=30)
    assert cursor.window_start() == T0 - timedelta(seconds=10)


@pytest.mark.unit
def test_cursor_round_trips_through_dict():
    cursor = Cursor(T0, 321)
    assert cursor.to_dict() == {"timestamp": "2024-01-01T12:00:00Z", "sequence_id": 321}
    assert Cursor.from_dict(cursor.to_dict()) == cursor


@pytest.mark.unit
def test_cursor_from_dict_rejects_incomplete_payload():
    with pytest.raises(ValueError):
        Cursor.from_dict({"timestamp": "2024-01-01T12:00:00Z"})


@pytest.mark.unit
def test_since_now_uses_clock():
    cursor = Cursor.since_now(lambda: T0.timestamp())
    assert cursor == Cursor(T0, 0)


@pytest.mark.unit
def test_naive_timestamps_are_treated_as_utc():
    naive = datetime(2024, 1, 1, 12, 0, 0)
    assert Cursor.since(naive) == Cursor(T0, 0)
    assert format_timestamp(naive) == "2024-01-01T12:00:00Z"


@pytest.mark.unit
def test_directly_built_cursor_with_naive_timestamp_still_advances():
    cursor = Cursor(datetime(2024, 1, 1, 12, 0, 0), 1)
    assert cursor == Cursor(T0, 1)
    assert cursor.timestamp.tzinfo is timezone.utc

    assert cursor.advance(_change(2, seconds=1)) == Cursor(T0 + timedelta(seconds=1), 2)
    assert cursor.advance(_change(0, seconds=-1)) is cursor


@pytest.mark.unit
def test_parse_timestamp_reads_feed_format():
    assert parse_timestamp("2024-01-01T12:00:00Z") == T0


@pytest.mark.unit
def test_cursor_from_continuation_token():
    cursor = cursor_from_continuation("20240101120000|98765")
    assert cursor == Cursor(T0, 98765)


@pytest.mark.unit
@pytest.mark.parametrize("token", ["20240101120000", "garbage|12", "20240101120000|x"])
def test_cursor_from_continuation_rejects_bad_tokens(token):
    with pytest.raises(ContractError):
        cursor_from_continuation(token)


@pytest.mark.unit
def test_entity_id_strips_namespace_prefix():
    assert _change(1, title="Q42").entity_id == "Q42"
    assert _change(1, title="Property:P31").entity_id == "P31"
