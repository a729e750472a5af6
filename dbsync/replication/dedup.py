"""
Per-record deduplication of a pending batch.

Several log entries for the same record collapse into the one entry that
represents the record's final intended state:

- with a Delete in the group, the latest Delete wins, unless an Insert
  follows it (a recreate), in which case the latest such Insert wins, unless
  an Update follows that Insert, in which case the latest such Update wins
- without a Delete, the more recent of the latest Insert and latest Update
  wins
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from dbsync.models.log import ReplicationLogEntry, ReplicationOperation


@dataclass
class DedupGroup:
    """The surviving entry of one record plus the entries it replaced."""
    entry: ReplicationLogEntry
    superseded: List[ReplicationLogEntry] = field(default_factory=list)

    @property
    def ids(self) -> List[int]:
        return [self.entry.id] + [e.id for e in self.superseded]


def _order_key(entry: ReplicationLogEntry):
    return (entry.timestamp, entry.id)


def _latest(entries: Sequence[ReplicationLogEntry], operation: ReplicationOperation,
            after: int = -1) -> int:
    """Index of the last entry of ``operation`` positioned after ``after`` (-1 if none)."""
    for index in range(len(entries) - 1, after, -1):
        if entries[index].operation_type == operation:
            return index
    return -1


def collapse(group: Sequence[ReplicationLogEntry]) -> ReplicationLogEntry:
    """Reduce the entries of one record to the entry describing its final state."""
    if len(group) == 1:
        return group[0]

    ordered = sorted(group, key=_order_key)

    delete_at = _latest(ordered, ReplicationOperation.DELETE)
    if delete_at >= 0:
        insert_at = _latest(ordered, ReplicationOperation.INSERT, after=delete_at)
        if insert_at < 0:
            return ordered[delete_at]
        update_at = _latest(ordered, ReplicationOperation.UPDATE, after=insert_at)
        return ordered[update_at] if update_at >= 0 else ordered[insert_at]

    insert_at = _latest(ordered, ReplicationOperation.INSERT)
    update_at = _latest(ordered, ReplicationOperation.UPDATE)
    return ordered[max(insert_at, update_at)]


def deduplicate_groups(entries: Sequence[ReplicationLogEntry]) -> List[DedupGroup]:
    """
    Group a batch by record and collapse each group.

    Returns:
        One DedupGroup per record, sorted by the surviving entry's timestamp
    """
    groups: Dict[str, List[ReplicationLogEntry]] = OrderedDict()
    for entry in entries:
        groups.setdefault(entry.record_key, []).append(entry)

    result = []
    for group in groups.values():
        survivor = collapse(group)
        result.append(DedupGroup(entry=survivor, superseded=[e for e in group if e is not survivor]))

    result.sort(key=lambda g: _order_key(g.entry))
    return result


def deduplicate(entries: Sequence[ReplicationLogEntry]) -> List[ReplicationLogEntry]:
    """Collapse a batch to one entry per record, ordered by timestamp."""
    return [group.entry for group in deduplicate_groups(entries)]
