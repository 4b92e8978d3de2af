"""Overview helpers: peek statistics and partition descriptors.

These work on already-fetched records so that the service decides which
scopes to read and how to handle unreachable ones.
"""

from __future__ import annotations

from collections import Counter, defaultdict

from .exceptions import ValidationError
from .models import MemoryRecord, RecordStatus, Scope

PARTITION_KEYS = ("tag", "date", "type", "scope", "importance_band")

IMPORTANCE_BANDS = [
    ("0.00-0.25", 0.0, 0.25),
    ("0.25-0.50", 0.25, 0.5),
    ("0.50-0.75", 0.5, 0.75),
    ("0.75-1.00", 0.75, 1.01),
]

TOP_TAGS = 20


def _preview(record: MemoryRecord, scope: Scope) -> dict:
    return {
        "id": record.id,
        "scope": scope.value,
        "memory_type": record.memory_type.value,
        "importance": record.importance,
        "content": record.content[:200],
    }


def peek_summary(
    records: list[tuple[Scope, MemoryRecord]],
    samples: list[tuple[Scope, MemoryRecord]],
    sample_n: int = 5,
) -> dict:
    """Counts by type and status, tag frequency, date range and samples.

    Args:
        records: Every record of the peeked scopes, any status
        samples: Sample candidates in preferred order
        sample_n: Number of samples to keep
    """
    type_counts: Counter[str] = Counter()
    status_counts: Counter[str] = Counter()
    tag_counts: Counter[str] = Counter()
    min_date = max_date = None

    for _, record in records:
        type_counts[record.memory_type.value] += 1
        status_counts[record.status.value] += 1
        tag_counts.update(record.tags)
        if min_date is None or record.created_at < min_date:
            min_date = record.created_at
        if max_date is None or record.created_at > max_date:
            max_date = record.created_at

    picked = [_preview(r, s) for s, r in samples[:sample_n]]
    return {
        "total": len(records),
        "type_counts": dict(type_counts),
        "status_counts": dict(status_counts),
        "top_tags": [
            {"tag": tag, "count": count}
            for tag, count in sorted(tag_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_TAGS]
        ],
        "date_range": {
            "min": min_date.isoformat() if min_date else None,
            "max": max_date.isoformat() if max_date else None,
        },
        "sample_count": len(picked),
        "samples": picked,
    }


def partition_records(
    records: list[tuple[Scope, MemoryRecord]],
    by: str,
    max_partitions: int = 4,
) -> list[dict]:
    """Split active records into partitions with counts and mean importance.

    ``tag`` partitions are sorted by size (a record counts once per tag),
    ``date`` partitions are months in chronological order, ``scope`` and
    ``importance_band`` always list every bucket, even empty ones.
    """
    if by not in PARTITION_KEYS:
        raise ValidationError("partition_by", f"must be one of {PARTITION_KEYS}, got {by!r}")

    buckets: dict[str, list[float]] = defaultdict(list)
    if by == "scope":
        for scope in Scope:
            buckets[scope.value] = []
    elif by == "importance_band":
        for key, _, _ in IMPORTANCE_BANDS:
            buckets[key] = []

    for scope, record in records:
        if record.status != RecordStatus.ACTIVE:
            continue
        if by == "tag":
            keys = record.tags
        elif by == "date":
            keys = [record.created_at.strftime("%Y-%m")]
        elif by == "type":
            keys = [record.memory_type.value]
        elif by == "scope":
            keys = [scope.value]
        else:
            keys = [
                key for key, low, high in IMPORTANCE_BANDS
                if low <= record.importance < high
            ]
        for key in keys:
            buckets[key].append(record.importance)

    partitions = [
        {
            "key": key,
            "count": len(values),
            "avg_importance": sum(values) / len(values) if values else 0.0,
        }
        for key, values in buckets.items()
    ]
    if by in ("tag", "type"):
        partitions.sort(key=lambda p: (-p["count"], p["key"]))
    elif by == "date":
        partitions.sort(key=lambda p: p["key"])
    return partitions[:max_partitions]
