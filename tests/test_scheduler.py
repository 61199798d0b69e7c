from __future__ import annotations

from envharness.scheduler import NEUTRAL_PRIORITY, CollectionScheduler


def test_default_order():
    scheduler = CollectionScheduler()
    assert scheduler.order(["DownloadValidation", "Integration", "Integration-NoPassword"]) == [
        "Integration",
        "Integration-NoPassword",
        "DownloadValidation",
    ]


def test_unknown_groups_are_neutral_and_stable():
    scheduler = CollectionScheduler()
    assert scheduler.priority("Other") == NEUTRAL_PRIORITY
    assert scheduler.order(["DownloadValidation", "B", "A", "Integration"]) == [
        "Integration",
        "B",
        "A",
        "DownloadValidation",
    ]


def test_custom_priorities():
    scheduler = CollectionScheduler({"slow": 90, "fast": 10})
    assert scheduler.order(["slow", "Integration", "fast"]) == ["fast", "Integration", "slow"]


def test_order_items():
    scheduler = CollectionScheduler()
    items = [("DownloadValidation", 1), (None, 2), ("Integration", 3)]
    assert scheduler.order_items(items, lambda item: item[0]) == [
        ("Integration", 3),
        (None, 2),
        ("DownloadValidation", 1),
    ]
