"""Balanced k-d tree for nearest-neighbor lookup over pattern feature vectors.

Build splits on the median of the axis ``depth % dimensions``; inserts walk
down the same comparisons (strictly-less goes left). k-NN keeps a bounded
max-heap of the k best candidates, ordered by (squared distance, item id),
so the result is the exact k smallest under that total order regardless of
tree shape or insertion order.
"""

from __future__ import annotations

import heapq
import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field


@dataclass(slots=True)
class KDNode:
    point: tuple[float, ...]
    item_id: str
    axis: int
    left: KDNode | None = None
    right: KDNode | None = None


@dataclass(slots=True, order=False)
class _Candidate:
    """Heap entry with inverted ordering so heapq keeps the worst on top."""

    distance: float
    item_id: str = field(compare=False)

    def __lt__(self, other: _Candidate) -> bool:
        return (self.distance, self.item_id) > (other.distance, other.item_id)

    def beats(self, other: _Candidate) -> bool:
        return (self.distance, self.item_id) < (other.distance, other.item_id)


def squared_distance(a: Sequence[float], b: Sequence[float]) -> float:
    return sum((x - y) * (x - y) for x, y in zip(a, b))


class KDTree:
    """k-d tree keyed by string item ids.

    Args:
        dimensions: Length of every point stored in the tree.
    """

    def __init__(self, dimensions: int) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self.dimensions = dimensions
        self._root: KDNode | None = None
        self._size = 0
        self._depth = 0

    def __len__(self) -> int:
        return self._size

    @property
    def depth(self) -> int:
        return self._depth

    # ── Construction ─────────────────────────────────────────────────────

    def build(self, items: Sequence[tuple[Sequence[float], str]]) -> None:
        """Replace the tree contents with a balanced tree over ``items``."""
        points = [(self._check(point), item_id) for point, item_id in items]
        self._size = len(points)
        self._depth = 0
        self._root = self._build(points, 0)

    def _build(self, points: list[tuple[tuple[float, ...], str]], depth: int) -> KDNode | None:
        if not points:
            return None
        self._depth = max(self._depth, depth + 1)
        axis = depth % self.dimensions
        points.sort(key=lambda p: (p[0][axis], p[1]))
        median = len(points) // 2
        point, item_id = points[median]
        node = KDNode(point=point, item_id=item_id, axis=axis)
        node.left = self._build(points[:median], depth + 1)
        node.right = self._build(points[median + 1 :], depth + 1)
        return node

    def insert(self, point: Sequence[float], item_id: str) -> None:
        """Insert one point without rebalancing."""
        vector = self._check(point)
        if self._root is None:
            self._root = KDNode(point=vector, item_id=item_id, axis=0)
            self._size = 1
            self._depth = 1
            return

        node = self._root
        level = 0
        while True:
            level += 1
            if vector[node.axis] < node.point[node.axis]:
                if node.left is None:
                    node.left = KDNode(vector, item_id, level % self.dimensions)
                    break
                node = node.left
            else:
                if node.right is None:
                    node.right = KDNode(vector, item_id, level % self.dimensions)
                    break
                node = node.right
        self._size += 1
        self._depth = max(self._depth, level + 1)

    def rebuild(self) -> None:
        """Rebalance from scratch in O(n log n)."""
        self.build([(node.point, node.item_id) for node in self._iter_nodes()])

    def needs_rebalance(self, imbalance_factor: float) -> bool:
        if self._size < 8:
            return False
        return self._depth > imbalance_factor * math.log2(self._size + 1)

    # ── Queries ──────────────────────────────────────────────────────────

    def nearest(self, query: Sequence[float], k: int) -> list[tuple[str, float]]:
        """Return up to k (item_id, squared_distance) pairs, closest first."""
        if k <= 0 or self._root is None:
            return []
        target = self._check(query)
        heap: list[_Candidate] = []
        self._search(self._root, target, k, heap)
        best = sorted(heap, key=lambda c: (c.distance, c.item_id))
        return [(c.item_id, c.distance) for c in best]

    def _search(
        self,
        node: KDNode | None,
        target: tuple[float, ...],
        k: int,
        heap: list[_Candidate],
    ) -> None:
        if node is None:
            return

        candidate = _Candidate(squared_distance(node.point, target), node.item_id)
        if len(heap) < k:
            heapq.heappush(heap, candidate)
        elif candidate.beats(heap[0]):
            heapq.heapreplace(heap, candidate)

        diff = target[node.axis] - node.point[node.axis]
        near, far = (node.left, node.right) if diff < 0 else (node.right, node.left)
        self._search(near, target, k, heap)

        # Only skip the far side when the splitting plane is strictly beyond the k-th best.
        if len(heap) < k or diff * diff <= heap[0].distance:
            self._search(far, target, k, heap)

    def items(self) -> Iterator[tuple[tuple[float, ...], str]]:
        for node in self._iter_nodes():
            yield node.point, node.item_id

    def _iter_nodes(self) -> Iterator[KDNode]:
        stack = [self._root] if self._root else []
        while stack:
            node = stack.pop()
            yield node
            if node.left:
                stack.append(node.left)
            if node.right:
                stack.append(node.right)

    def _check(self, point: Sequence[float]) -> tuple[float, ...]:
        if len(point) != self.dimensions:
            raise ValueError(f"expected {self.dimensions} dimensions, got {len(point)}")
        return tuple(float(x) for x in point)
