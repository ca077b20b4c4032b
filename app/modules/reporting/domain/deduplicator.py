"""
Record deduplication.

The same resource/day/cost line shows up in more than one export run when
exports are re-triggered. The fingerprint is
(date, subscriptionId, resourceName, serviceName, billedCost); it is a
pragmatic key, so two genuine identical charges on one day collapse into one.
"""

from typing import Iterable, List, Tuple

from app.schemas.costs import CostRecord


def deduplicate(records: Iterable[CostRecord]) -> Tuple[List[CostRecord], int]:
    """Keep the first record per fingerprint. Returns (records, removed_count)."""
    seen = set()
    unique: List[CostRecord] = []
    total = 0
    for record in records:
        total += 1
        key = record.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique, total - len(unique)
