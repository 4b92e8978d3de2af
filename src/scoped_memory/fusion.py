"""Reciprocal Rank Fusion.

    rrf_score(doc) = sum over lists i of 1 / (k + rank_i(doc))

rank is 0-based and a document missing from a list contributes nothing,
so a document ranked first in two lists scores exactly 2/k.
"""

from __future__ import annotations

import hashlib
import json
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

DEFAULT_RRF_K = 60


@dataclass
class FusedItem:
    id: str
    score: float
    sources: list[str] = field(default_factory=list)
    ranks: dict[str, int] = field(default_factory=dict)


def reciprocal_rank_fusion(
    ranked_lists: Mapping[str, Sequence[str]],
    k: int = DEFAULT_RRF_K,
) -> list[FusedItem]:
    """Fuse ranked id lists into one ranking.

    Args:
        ranked_lists: source name -> ids ordered best first
        k: smoothing constant

    Returns:
        FusedItems sorted by score descending, ties broken by id for
        deterministic output
    """
    scores: dict[str, float] = defaultdict(float)
    sources: dict[str, list[str]] = defaultdict(list)
    ranks: dict[str, dict[str, int]] = defaultdict(dict)

    for source, ids in ranked_lists.items():
        seen: set[str] = set()
        for rank, doc_id in enumerate(ids):
            # Only the best rank of a repeated id counts
            if doc_id in seen:
                continue
            seen.add(doc_id)
            scores[doc_id] += 1.0 / (k + rank)
            sources[doc_id].append(source)
            ranks[doc_id][source] = rank

    fused = [
        FusedItem(id=doc_id, score=score, sources=sources[doc_id], ranks=ranks[doc_id])
        for doc_id, score in scores.items()
    ]
    fused.sort(key=lambda item: (-item.score, item.id))
    return fused


def max_rrf_score(list_count: int, k: int = DEFAULT_RRF_K) -> float:
    """Score of a document ranked first in every one of list_count lists."""
    return list_count / k if list_count > 0 else 0.0


def _item_id(item: Mapping[str, Any]) -> str:
    if isinstance(item.get("id"), str):
        return item["id"]
    payload = json.dumps(item.get("content", item), sort_keys=True, default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def _content_key(item: Mapping[str, Any]) -> str:
    content = item.get("content")
    if not isinstance(content, str):
        content = json.dumps(item, sort_keys=True, default=str)
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def aggregate(
    result_sets: Sequence[tuple[str, Sequence[Mapping[str, Any]]]],
    limit: int = 10,
    k: int = DEFAULT_RRF_K,
) -> list[dict[str, Any]]:
    """Merge several sub-search result sets into one ranked list.

    Items are identified by their ``id`` (or a hash of their content when
    they have none). After fusion, items with identical content are
    dropped so that the same memory found under two ids appears once.

    Returns:
        Dicts with ``id``, ``data``, ``rrf_score`` and ``sources``
    """
    ranked: dict[str, list[str]] = {}
    data_by_id: dict[str, Mapping[str, Any]] = {}
    for source, items in result_sets:
        ids = []
        for item in items:
            item_id = _item_id(item)
            data_by_id.setdefault(item_id, item)
            ids.append(item_id)
        # Two sets may share a label; keep them as separate lists
        label = source
        suffix = 1
        while label in ranked:
            suffix += 1
            label = f"{source}#{suffix}"
        ranked[label] = ids

    seen_content: set[str] = set()
    merged: list[dict[str, Any]] = []
    for item in reciprocal_rank_fusion(ranked, k=k):
        data = data_by_id[item.id]
        key = _content_key(data)
        if key in seen_content:
            continue
        seen_content.add(key)
        merged.append({
            "id": item.id,
            "data": dict(data),
            "rrf_score": item.score,
            "sources": [s.split("#")[0] for s in item.sources],
        })
        if len(merged) >= limit:
            break
    return merged
