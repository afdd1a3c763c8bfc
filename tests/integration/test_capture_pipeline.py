import json

import pytest

from conftest import FakeWikibase, make_settings, rc

from wikibase_change_capture.capture.checkpoint import PersistentCheckpointStore
from wikibase_change_capture.capture.model import Cursor, parse_timestamp
from wikibase_change_capture.capture.service import LoopState, build_capture_loop
from wikibase_change_capture.uris import DEPRECATED_ONTOLOGIES


def _fake_with(pages, entities):
    fake = FakeWikibase()
    for entries, continuation in pages:
        fake.add_page(entries, continuation)
    for entity_id in entities:
        fake.add_entity(entity_id)
    return fake


@pytest.mark.integration
def test_capture_resumes_after_restart(tmp_path):
    settings = make_settings(tmp_path)
    fake = _fake_with(
        [
            ([rc("Q1", 1), rc("Property:P31", 2, ns=120)], "20240101000100|3"),
            ([rc("Q1", 3, timestamp="2024-01-01T00:01:30Z")], None),
        ],
        ["Q1", "P31"],
    )
    loop = build_capture_loop(settings, http_client=fake.client())

    result = loop.run_cycle()
    loop.close()

    assert loop.state is LoopState.IDLE
    assert result.delivered == 2
    committed = Cursor(parse_timestamp("2024-01-01T00:01:30Z"), 3)
    store = PersistentCheckpointStore(settings.checkpoint_path)
    assert store.load(settings.stream_name) == committed

    records = [
        json.loads(line)
        for line in settings.sink_jsonl_path.read_text().splitlines()
    ]
    assert [(r["entity_id"], r["sequence_id"]) for r in records] == [("Q1", 3), ("P31", 2)]
    for record in records:
        assert record["statements"]
        assert not any(
            prefix in statement
            for statement in record["statements"]
            for prefix in DEPRECATED_ONTOLOGIES
        )

    replayed = [
        rc("Q1", 3, timestamp="2024-01-01T00:01:30Z"),
        rc("Q7", 4, timestamp="2024-01-01T00:02:00Z"),
    ]
    restarted_fake = _fake_with(
        [(replayed, None)],
        ["Q1", "Q7"],
    )
    restarted = build_capture_loop(settings, http_client=restarted_fake.client())
    assert restarted.cursor == committed

    restarted.run_cycle()

    params = restarted_fake.feed_requests[0].url.params
    assert params["rcstart"] == "20240101000120"
    assert restarted.cursor == Cursor(parse_timestamp("2024-01-01T00:02:00Z"), 4)
    titles = [
        json.loads(line)["entity_title"]
        for line in settings.sink_jsonl_path.read_text().splitlines()
    ]
    assert titles[-1] == "Q7"


@pytest.mark.integration
def test_sink_cursor_recovers_lost_checkpoint(tmp_path):
    settings = make_settings(tmp_path)
    fake = _fake_with([([rc("Q1", 1), rc("Q2", 2)], None)], ["Q1", "Q2"])
    loop = build_capture_loop(settings, http_client=fake.client())
    loop.run_cycle()

    settings.checkpoint_path.unlink()

    recovered = build_capture_loop(settings, http_client=FakeWikibase().client())
    assert recovered.cursor == Cursor(parse_timestamp("2024-01-01T00:01:00Z"), 2)


@pytest.mark.integration
def test_build_capture_loop_requires_host(tmp_path):
    with pytest.raises(ValueError):
        build_capture_loop(make_settings(tmp_path, wikibase_host=""))
