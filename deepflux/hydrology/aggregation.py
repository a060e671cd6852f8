"""Spatial aggregation: per-node outflow to per-node inflow from upstream neighbours.

Both topologies expose the same contract: ``aggregator(outflow)`` takes a tensor
with the node axis first (any trailing axes) and returns the summed outflow of
each node's direct predecessors, with the same shape.
"""

from typing import Dict, List, Sequence, Tuple

import torch
import torch.nn.functional as F

from ..errors import DefinitionError
from .sorting import node_generations

# ESRI D8 direction codes and their (row, col) offsets
D8_OFFSETS: Dict[int, Tuple[int, int]] = {
    1: (0, 1),  # E
    2: (1, 1),  # SE
    4: (1, 0),  # S
    8: (1, -1),  # SW
    16: (0, -1),  # W
    32: (-1, -1),  # NW
    64: (-1, 0),  # N
    128: (-1, 1),  # NE
}


class Aggregator:
    edges: List[Tuple[int, int]]
    num_nodes: int

    def node_levels(self) -> List[List[int]]:
        """Topological generations of the node graph, upstream first."""
        return node_generations(self.edges, self.num_nodes)

    def adjacency(self, dtype=None) -> torch.Tensor:
        """Sparse ``(N, N)`` adjacency matrix, ``A[src, dst] = 1``."""
        if self.edges:
            index = torch.tensor(self.edges, dtype=torch.long).T
        else:
            index = torch.zeros(2, 0, dtype=torch.long)
        values = torch.ones(index.shape[1], dtype=dtype or torch.get_default_dtype())
        return torch.sparse_coo_tensor(index, values, (self.num_nodes, self.num_nodes)).coalesce()

    def __call__(self, outflow: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError


class GraphAggregator(Aggregator):
    """Aggregation over an explicit edge list ``[(src, dst), ...]``.

    Equivalent to ``A^T @ outflow`` with ``A`` the adjacency matrix, computed as
    a scatter-add over the edges.
    """

    def __init__(self, edges: Sequence[Tuple[int, int]], num_nodes: int):
        self.num_nodes = int(num_nodes)
        self.edges = [(int(s), int(d)) for s, d in edges]
        for s, d in self.edges:
            if not (0 <= s < self.num_nodes and 0 <= d < self.num_nodes):
                raise DefinitionError(f"Edge ({s}, {d}) refers to a node outside 0..{self.num_nodes - 1}")
        self._src = torch.tensor([s for s, _ in self.edges], dtype=torch.long)
        self._dst = torch.tensor([d for _, d in self.edges], dtype=torch.long)

    @classmethod
    def from_adjacency(cls, adjacency) -> "GraphAggregator":
        """Build from a dense or sparse ``(N, N)`` matrix with ``A[src, dst] != 0``."""
        adjacency = torch.as_tensor(adjacency) if not torch.is_tensor(adjacency) else adjacency
        if adjacency.dim() != 2 or adjacency.shape[0] != adjacency.shape[1]:
            raise DefinitionError(f"Adjacency must be square, got shape {tuple(adjacency.shape)}")
        if adjacency.is_sparse:
            adjacency = adjacency.coalesce()
            index = adjacency.indices()[:, adjacency.values() != 0]
        else:
            index = adjacency.nonzero().T
        return cls(list(zip(index[0].tolist(), index[1].tolist())), adjacency.shape[0])

    def __call__(self, outflow: torch.Tensor) -> torch.Tensor:
        src = self._src.to(outflow.device)
        dst = self._dst.to(outflow.device)
        return torch.zeros_like(outflow).index_add(0, dst, outflow.index_select(0, src))


class GridAggregator(Aggregator):
    """D8 flow accumulation on a grid.

    Parameters
    ----------
    flwdir
        ``(H, W)`` integer grid of D8 codes; any other value (e.g. 0) is a sink.
    positions
        ``(row, col)`` of every node, zero-based; node ``i`` sits at ``positions[i]``.
    """

    def __init__(self, flwdir, positions: Sequence[Tuple[int, int]]):
        self.flwdir = torch.as_tensor(flwdir, dtype=torch.long)
        if self.flwdir.dim() != 2:
            raise DefinitionError(f"flwdir must be a 2-d grid, got shape {tuple(self.flwdir.shape)}")
        height, width = self.flwdir.shape
        self.positions = [(int(r), int(c)) for r, c in positions]
        for r, c in self.positions:
            if not (0 <= r < height and 0 <= c < width):
                raise DefinitionError(f"Node position ({r}, {c}) is outside the {height}x{width} grid")
        if len(set(self.positions)) != len(self.positions):
            raise DefinitionError("Two nodes share the same grid cell")
        self.num_nodes = len(self.positions)
        self._rows = torch.tensor([r for r, _ in self.positions], dtype=torch.long)
        self._cols = torch.tensor([c for _, c in self.positions], dtype=torch.long)

        lookup = {pos: i for i, pos in enumerate(self.positions)}
        self.edges = []
        for i, (r, c) in enumerate(self.positions):
            offset = D8_OFFSETS.get(int(self.flwdir[r, c]))
            if offset is None:
                continue
            dst = lookup.get((r + offset[0], c + offset[1]))
            if dst is not None:
                self.edges.append((i, dst))

    def __call__(self, outflow: torch.Tensor) -> torch.Tensor:
        height, width = self.flwdir.shape
        trailing = outflow.shape[1:]
        values = outflow.reshape(self.num_nodes, -1).T
        rows, cols = self._rows.to(outflow.device), self._cols.to(outflow.device)
        flwdir = self.flwdir.to(outflow.device)

        grid = values.new_zeros(values.shape[0], height, width)
        grid[:, rows, cols] = values
        inflow = torch.zeros_like(grid)
        for code, (dr, dc) in D8_OFFSETS.items():
            masked = grid * (flwdir == code).to(grid.dtype)
            padded = F.pad(masked, (1, 1, 1, 1))
            inflow = inflow + padded[:, 1 - dr : 1 - dr + height, 1 - dc : 1 - dc + width]
        return inflow[:, rows, cols].T.reshape(self.num_nodes, *trailing)
