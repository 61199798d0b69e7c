from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

T = TypeVar("T")

NEUTRAL_PRIORITY = 50

# Lower runs first. Download validation mutates shared state, so it goes last.
DEFAULT_PRIORITIES: Dict[str, int] = {
    "Integration": 0,
    "Integration-NoPassword": 1,
    "DownloadValidation": 100,
}


class CollectionScheduler:
    """Order test groups by a static per-name priority.

    Unknown names get :data:`NEUTRAL_PRIORITY`. The sort is stable, so groups
    sharing a priority keep their discovery order.
    """

    def __init__(self, priorities: Optional[Mapping[str, int]] = None) -> None:
        self.priorities: Dict[str, int] = dict(DEFAULT_PRIORITIES if priorities is None else priorities)

    def priority(self, name: Optional[str]) -> int:
        if name is None:
            return NEUTRAL_PRIORITY
        return self.priorities.get(name, NEUTRAL_PRIORITY)

    def order(self, groups: Iterable[str]) -> List[str]:
        return sorted(groups, key=self.priority)

    def order_items(self, items: Iterable[T], group_of: Callable[[T], Optional[str]]) -> List[T]:
        """Stable-sort arbitrary items by the priority of their group."""

        return sorted(items, key=lambda item: self.priority(group_of(item)))
