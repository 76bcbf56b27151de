"""Target set publisher — filters snapshots and notifies subscribers."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

from beacon.config import Filter
from beacon.targets import TargetGroup

logger = logging.getLogger(__name__)

Subscriber = Callable[[tuple[TargetGroup, ...]], None]


def apply_filters(
    groups: Iterable[TargetGroup],
    filters: Sequence[Filter],
) -> tuple[TargetGroup, ...]:
    """Keep targets whose labels satisfy every filter.

    Values within one filter are alternatives; separate filters must all
    match.  Groups stay in the output even when every target is dropped.
    """
    groups = tuple(groups)
    if not filters:
        return groups

    result: list[TargetGroup] = []
    for group in groups:
        kept = tuple(
            target
            for target in group.targets
            if all(group.label_value(target, f.name) in f.values for f in filters)
        )
        if len(kept) == len(group.targets):
            result.append(group)
        else:
            result.append(TargetGroup(source=group.source, targets=kept, labels=group.labels))
    return tuple(result)


class TargetSetPublisher:
    """Renders the exported view of a snapshot.

    Rendering content equal to the previous view returns the previous
    tuple object, so ``export() is export()`` holds until something
    actually changes.
    """

    def __init__(self) -> None:
        self._last: tuple[TargetGroup, ...] = ()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        """Register a callback invoked with the new view whenever it changes."""
        self._subscribers.append(callback)

    def render(
        self,
        groups: Iterable[TargetGroup],
        filters: Sequence[Filter] = (),
    ) -> tuple[TargetGroup, ...]:
        view = apply_filters(groups, filters)
        if view == self._last:
            return self._last
        self._last = view
        return view

    def notify(self, view: tuple[TargetGroup, ...]) -> None:
        for callback in self._subscribers:
            try:
                callback(view)
            except Exception:
                logger.exception("Error in target set subscriber")
