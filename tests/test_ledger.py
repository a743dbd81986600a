"""Tests for peekguard.core.ledger"""

from datetime import datetime, timezone

import pytest

from peekguard.__version__ import __version__
from peekguard.core.ledger import Ledger, create_connection, get_ledger_schema
from peekguard.core.names import Namespace, SummaryTag


@pytest.fixture
def ledger() -> Ledger:
    return Ledger(create_connection(), "test")


def write(ledger, experiment_id, namespace, step, payload, tag=None):
    ledger.write_event(
        time_index="t",
        namespace=namespace,
        kind="k",
        experiment_id=experiment_id,
        step_key=step,
        payload_type="P",
        payload=payload,
        tag=tag,
        ts=datetime(2024, 6, 15, tzinfo=timezone.utc),
    )


class TestLedger:
    def test_schema_columns(self):
        schema = get_ledger_schema()
        assert "payload" in schema.names
        assert "peekguard_version" in schema.names

    def test_events_keep_insertion_order(self, ledger):
        for i in range(5):
            write(ledger, "e1", Namespace.STATS, f"cycle-{i}", {"i": i})
        events = ledger.events(experiment_id="e1")
        assert [e["payload"]["i"] for e in events] == [0, 1, 2, 3, 4]
        assert events[0]["peekguard_version"] == __version__
        assert events[0]["ledger_name"] == "test"

    def test_filters(self, ledger):
        write(ledger, "e1", Namespace.STATS, "s", {"a": 1})
        write(ledger, "e1", Namespace.SIGNALS, "s", {"a": 2}, tag=SummaryTag)
        write(ledger, "e2", Namespace.SIGNALS, "s", {"a": 3}, tag=SummaryTag)
        assert len(ledger.events(namespace=Namespace.SIGNALS)) == 2
        assert len(ledger.events(experiment_id="e1", tag=SummaryTag)) == 1
        assert ledger.latest(experiment_id="e2", namespace="signals")["payload"] == {"a": 3}

    def test_latest_on_empty(self, ledger):
        assert ledger.latest(experiment_id="nope", namespace=Namespace.STATS) is None

    def test_named_ledgers_share_a_connection(self):
        conn = create_connection()
        first, second = Ledger(conn, "one"), Ledger(conn, "two")
        write(first, "e1", Namespace.STATS, "s", {})
        assert len(first.events()) == 1
        assert second.events() == []

    def test_unsupported_backend(self):
        with pytest.raises(ValueError):
            create_connection("sqlite")
