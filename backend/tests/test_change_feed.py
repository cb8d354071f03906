"""Change notifier and broadcast feed behaviour."""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from pickupflow.models.lifecycle import EntityType  # noqa: E402
from pickupflow.services.notifier import BroadcastChangeFeed, ChangeNotifier  # noqa: E402


class BrokenFeed:
    def publish(self, event) -> None:
        raise ConnectionError("feed offline")


def test_subscribers_receive_only_their_tenant():
    feed = BroadcastChangeFeed(backlog=10)
    tenant_a, tenant_b = [], []
    feed.subscribe("a", tenant_a.append)
    unsubscribe = feed.subscribe("b", tenant_b.append)

    notifier = ChangeNotifier(feed)
    notifier.publish(EntityType.REQUEST, "r1", "a", "pending")
    unsubscribe()
    notifier.publish(EntityType.REQUEST, "r2", "b", "pending")

    assert [event.entity_id for event in tenant_a] == ["r1"]
    assert tenant_b == []
    assert [event.entity_id for event in feed.recent("b")] == ["r2"]


def test_backlog_is_bounded_and_newest_first():
    feed = BroadcastChangeFeed(backlog=3)
    notifier = ChangeNotifier(feed)
    for index in range(5):
        notifier.publish(EntityType.ASSIGNMENT, f"a{index}", "t1", "assigned")
    assert [event.entity_id for event in feed.recent("t1")] == ["a4", "a3", "a2"]
    assert len(feed.recent("t1", limit=1)) == 1


def test_failing_subscriber_does_not_block_others():
    feed = BroadcastChangeFeed(backlog=5)
    received = []

    def _explode(event):
        raise RuntimeError("subscriber bug")

    feed.subscribe("t1", _explode)
    feed.subscribe("t1", received.append)
    ChangeNotifier(feed).publish(EntityType.REQUEST, "r1", "t1", "pending")
    assert len(received) == 1


def test_publish_failure_is_swallowed():
    assert ChangeNotifier(BrokenFeed()).publish(EntityType.REQUEST, "r1", "t1", "pending") is None
    assert ChangeNotifier().publish(EntityType.REQUEST, "r1", "t1", "pending") is None
