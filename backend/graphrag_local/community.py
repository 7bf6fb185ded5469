"""Community detection for entities.

Communities are built by greedy weight-threshold clustering: relations are
visited by descending co-occurrence weight and their endpoints are merged
with union-find while the weight stays at or above the threshold. Entities
left alone form singleton communities. Results are cached per graph version
in a small LRU so a stale clustering is never served.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Generator, Iterable, List, Mapping, Tuple


@dataclass(frozen=True)
class Community:
    id: str
    entity_ids: frozenset[str]
    weight: float

    def as_dict(self) -> dict[str, object]:
        return {"id": self.id, "entity_ids": sorted(self.entity_ids), "weight": self.weight}


class _UnionFind:
    def __init__(self, items: Iterable[str]) -> None:
        self.parent: Dict[str, str] = {i: i for i in items}

    def find(self, x: str) -> str:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        # Smaller id wins so roots are deterministic.
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra


def _cluster(
    entity_ids: Iterable[str],
    relations: Mapping[Tuple[str, str], int],
    threshold: float,
    every: int,
) -> Generator[None, None, List[Community]]:
    """Clustering steps; yields at each checkpoint, returns the communities."""

    ids = sorted(set(entity_ids))
    uf = _UnionFind(ids)
    ordered = sorted(relations.items(), key=lambda kv: (-kv[1], kv[0]))
    for step, ((a, b), weight) in enumerate(ordered, start=1):
        if weight < threshold:
            break
        if a in uf.parent and b in uf.parent:
            uf.union(a, b)
        if step % every == 0:
            yield

    groups: Dict[str, set[str]] = {}
    for step, eid in enumerate(ids, start=1):
        groups.setdefault(uf.find(eid), set()).add(eid)
        if step % every == 0:
            yield

    internal: Dict[str, float] = {root: 0.0 for root in groups}
    for (a, b), weight in relations.items():
        if a in uf.parent and b in uf.parent:
            ra = uf.find(a)
            if ra == uf.find(b):
                internal[ra] += float(weight)

    communities = [
        Community(id=f"c:{root}", entity_ids=frozenset(members), weight=internal[root])
        for root, members in groups.items()
    ]
    communities.sort(key=lambda c: c.id)
    return communities


def detect_communities(
    entity_ids: Iterable[str],
    relations: Mapping[Tuple[str, str], int],
    *,
    threshold: float = 1.0,
) -> List[Community]:
    steps = _cluster(entity_ids, relations, threshold, every=1 << 30)
    while True:
        try:
            next(steps)
        except StopIteration as done:
            return done.value


async def detect_communities_async(
    entity_ids: Iterable[str],
    relations: Mapping[Tuple[str, str], int],
    *,
    threshold: float = 1.0,
    yield_every: int = 256,
) -> List[Community]:
    steps = _cluster(entity_ids, relations, threshold, every=max(1, yield_every))
    while True:
        try:
            next(steps)
        except StopIteration as done:
            return done.value
        await asyncio.sleep(0)


class CommunityCache:
    """LRU of community computations keyed by ``(graph_version, threshold)``."""

    def __init__(self, capacity: int = 4) -> None:
        self.capacity = max(1, capacity)
        self._entries: "OrderedDict[Tuple[int, float], List[Community]]" = OrderedDict()

    def get(self, version: int, threshold: float) -> List[Community] | None:
        key = (version, threshold)
        found = self._entries.get(key)
        if found is not None:
            self._entries.move_to_end(key)
        return found

    def put(self, version: int, threshold: float, communities: List[Community]) -> None:
        key = (version, threshold)
        self._entries[key] = communities
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def evict_lru(self) -> bool:
        if not self._entries:
            return False
        self._entries.popitem(last=False)
        return True

    def drop_older_than(self, version: int) -> None:
        for key in [k for k in self._entries if k[0] < version]:
            del self._entries[key]

    def items(self) -> List[Tuple[Tuple[int, float], List[Community]]]:
        return list(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)
