from __future__ import annotations

from routedesk.live import LiveFeed, SubscriptionGroup


def test_publish_reaches_only_the_collection_subscribers():
    feed = LiveFeed()
    seen = []
    feed.subscribe("drivers", seen.append)
    feed.subscribe("vehicles", lambda change: seen.append("wrong"))

    assert feed.publish("drivers", action="created", id=5) == 1
    assert seen == [{"collection": "drivers", "action": "created", "id": 5}]


def test_cancel_is_idempotent():
    feed = LiveFeed()
    subscription = feed.subscribe("drivers", lambda change: None)
    subscription.cancel()
    subscription.cancel()
    assert not subscription.active
    assert feed.subscriber_count() == 0
    assert feed.publish("drivers") == 0


def test_failing_subscriber_does_not_stop_the_others():
    feed = LiveFeed()
    seen = []

    def broken(change):
        raise RuntimeError("boom")

    feed.subscribe("programs", broken)
    feed.subscribe("programs", seen.append)
    assert feed.publish("programs", action="updated") == 2
    assert len(seen) == 1


def test_subscription_group_cancels_together():
    feed = LiveFeed()
    group = SubscriptionGroup(feed)
    first = group.subscribe("drivers", lambda change: None)
    group.subscribe("vehicles", lambda change: None)
    assert len(group) == 2

    first.cancel()
    assert len(group) == 1

    group.cancel()
    assert len(group) == 0
    assert feed.subscriber_count() == 0
