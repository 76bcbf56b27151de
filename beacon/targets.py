"""Target and target-group value types.

The JSON rendering is the common target-list format shared by file- and
HTTP-based discovery::

    [{"targets": ["10.0.0.1:9100"], "labels": {"env": "prod"}}]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from beacon.errors import PollError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    """A single discovered endpoint plus its label metadata."""

    address: str
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TargetGroup:
    """Targets from one discovery unit sharing a common label set.

    Targets are unique by address; the first occurrence wins.
    """

    source: str
    targets: tuple[Target, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        unique: list[Target] = []
        for target in self.targets:
            if target.address in seen:
                logger.debug("Dropping duplicate target %s in %s", target.address, self.source)
                continue
            seen.add(target.address)
            unique.append(target)
        object.__setattr__(self, "targets", tuple(unique))

    def label_value(self, target: Target, name: str) -> str | None:
        """Value of label *name* for *target*; target labels win over group labels."""
        if name in target.labels:
            return target.labels[name]
        return self.labels.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "targets": [t.address for t in self.targets],
            "labels": dict(self.labels),
        }


def parse_target_groups(
    data: Any,
    source_prefix: str,
    extra_labels: Mapping[str, str] | None = None,
) -> list[TargetGroup]:
    """Parse the JSON target-list format into :class:`TargetGroup` objects.

    Raises :class:`PollError` when *data* is not a list of
    ``{"targets": [...], "labels": {...}}`` objects.
    """
    if not isinstance(data, list):
        raise PollError(f"{source_prefix}: expected a list of target groups")

    groups: list[TargetGroup] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, Mapping):
            raise PollError(f"{source_prefix}: group {index} is not an object")
        addresses = entry.get("targets") or []
        labels = entry.get("labels") or {}
        if not isinstance(addresses, list) or not isinstance(labels, Mapping):
            raise PollError(f"{source_prefix}: group {index} is malformed")

        group_labels = {str(k): str(v) for k, v in labels.items()}
        if extra_labels:
            group_labels.update(extra_labels)
        groups.append(
            TargetGroup(
                source=f"{source_prefix}:{index}",
                targets=tuple(Target(address=str(a)) for a in addresses),
                labels=group_labels,
            )
        )
    return groups


def count_targets(groups: Iterable[TargetGroup]) -> int:
    return sum(len(g.targets) for g in groups)
