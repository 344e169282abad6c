"""
Canopy Gap Detector — PatchLabeler
===================================
Connected-component labelling of the gap mask with 8-connectivity
(queen's-move adjacency), using the classic two-pass algorithm:

  1.  First pass   scan foreground cells in raster order; give each cell
                   the smallest provisional label among its already
                   visited neighbours (W, NW, N, NE), or a new label, and
                   record every label equivalence in a union-find forest.
  2.  Second pass  resolve each provisional label to its root and number
                   the roots 1..n in order of first appearance.

Only foreground cells are visited, so sparse masks are cheap.  The output
numbering depends only on the mask, so reruns are reproducible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

from .raster import GeoRaster

logger = logging.getLogger("canopygaps.labeler")

PATCH_NODATA = 0

# Neighbours that precede a cell in row-major order.
_PRIOR_NEIGHBOURS = ((-1, -1), (-1, 0), (-1, 1), (0, -1))


class _UnionFind:
    """Disjoint-set forest over provisional labels 1..n (0 is unused)."""

    def __init__(self) -> None:
        self._parent: list[int] = [0]
        self._rank: list[int] = [0]

    def __len__(self) -> int:
        return len(self._parent) - 1

    def make(self) -> int:
        label = len(self._parent)
        self._parent.append(label)
        self._rank.append(0)
        return label

    def find(self, x: int) -> int:
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[x] != root:
            nxt = self._parent[x]
            self._parent[x] = root
            x = nxt
        return root

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self._rank[ra] < self._rank[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        if self._rank[ra] == self._rank[rb]:
            self._rank[ra] += 1


def label_components(foreground: npt.NDArray[np.bool_]) -> tuple[npt.NDArray[np.int32], int]:
    """Label 8-connected components of *foreground*.

    Args:
        foreground: 2-D boolean array, ``True`` for cells to label.

    Returns:
        ``(labels, count)`` — an int32 array with ``0`` for background and
        ``1..count`` for components, numbered in raster-scan order of each
        component's first cell.
    """
    fg = np.asarray(foreground, dtype=bool)
    if fg.ndim != 2:
        raise ValueError(f"foreground must be 2-D, got shape {fg.shape}")
    _, width = fg.shape
    rows, cols = np.nonzero(fg)
    if rows.size == 0:
        return np.zeros(fg.shape, dtype=np.int32), 0

    provisional = np.zeros(fg.shape, dtype=np.int64)
    forest = _UnionFind()

    # -- First pass -------------------------------------------------------
    for r, c in zip(rows.tolist(), cols.tolist()):
        neighbours = []
        for dr, dc in _PRIOR_NEIGHBOURS:
            rr, cc = r + dr, c + dc
            if rr >= 0 and 0 <= cc < width:
                label = int(provisional[rr, cc])
                if label:
                    neighbours.append(label)
        if not neighbours:
            provisional[r, c] = forest.make()
            continue
        smallest = min(neighbours)
        provisional[r, c] = smallest
        for other in neighbours:
            if other != smallest:
                forest.union(smallest, other)

    # -- Second pass ------------------------------------------------------
    roots = np.array([forest.find(i) for i in range(len(forest) + 1)], dtype=np.int64)
    cell_roots = roots[provisional[rows, cols]]
    unique_roots, first_seen, inverse = np.unique(
        cell_roots, return_index=True, return_inverse=True
    )
    order = np.argsort(first_seen, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(1, order.size + 1)

    labels = np.zeros(fg.shape, dtype=np.int32)
    labels[rows, cols] = rank[inverse.ravel()]
    return labels, int(unique_roots.size)


@dataclass(frozen=True)
class LabelResult:
    """Labelled patches and how many there are."""

    patches: GeoRaster
    count: int


class PatchLabeler:
    """Group connected gap-mask cells into integer-labelled patches."""

    def label(self, mask: GeoRaster) -> LabelResult:
        """Label every 8-connected component of valid (``1``) mask cells."""
        labels, count = label_components(mask.valid_mask)
        logger.info("Labelled %d patch(es) from %d gap cell(s)", count, int(np.count_nonzero(labels)))
        return LabelResult(mask.derive(labels, "patches", nodata=PATCH_NODATA), count)
