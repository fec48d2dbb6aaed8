# shipyard/scheduler/queue.py
"""
Admission queue ordering.

Highest score first; ties go to the oldest ticket, then the lowest number.
At a single slot the same tied item is not picked twice in a row, so a
ticket that keeps failing cannot starve its equals.
"""

from collections.abc import Iterable

from shipyard.models.jobs import QueueItem


def sort_key(item: QueueItem) -> tuple:
    return (-item.score, item.created_at, item.issue)


class AdmissionQueue:
    """Operates in place on the scheduler state's queue list."""

    def __init__(self, items: list[QueueItem]) -> None:
        self.items = items

    def __len__(self) -> int:
        return len(self.items)

    def ordered(self) -> list[QueueItem]:
        return sorted(self.items, key=sort_key)

    def contains(self, issue: int) -> bool:
        return any(item.issue == issue for item in self.items)

    def merge(self, candidates: Iterable[QueueItem], active_issues: set[int]) -> list[QueueItem]:
        """Add candidates not already queued or running. Returns the ones added."""
        added = []
        for item in candidates:
            if item.issue in active_issues or self.contains(item.issue):
                continue
            self.items.append(item)
            added.append(item)
        return added

    def push(self, item: QueueItem) -> None:
        """Requeue an item, replacing any stale entry for the same issue."""
        self.remove(item.issue)
        self.items.append(item)

    def remove(self, issue: int) -> None:
        self.items[:] = [i for i in self.items if i.issue != issue]

    def pop_next(self, last_selected: int | None = None, single_slot: bool = False) -> QueueItem | None:
        ordered = self.ordered()
        if not ordered:
            return None
        choice = ordered[0]
        if (
            single_slot
            and len(ordered) > 1
            and choice.issue == last_selected
            and ordered[1].score == choice.score
        ):
            choice = ordered[1]
        self.remove(choice.issue)
        return choice
