#!/usr/bin/env python3
"""
Per-cell cluster and metacluster membership.
"""

import numpy as np
import pandas as pd

from cytometry_errors import InvalidConfiguration


class ClusterAssignment:
    """
    Cluster ids (1-based) for every cell, optionally with their metacluster map.

    The id arrays are read-only; attaching a metacluster map returns a new
    assignment instead of modifying this one.
    """

    def __init__(self, cluster_ids, n_clusters, metacluster_map=None):
        cluster_ids = np.array(cluster_ids, dtype=int).ravel()
        n_clusters = int(n_clusters)
        if n_clusters < 1:
            raise InvalidConfiguration(f"number of clusters must be positive, got {n_clusters}")
        if cluster_ids.size and (cluster_ids.min() < 1 or cluster_ids.max() > n_clusters):
            raise InvalidConfiguration(
                f"cluster ids must lie in [1, {n_clusters}], got range "
                f"[{cluster_ids.min()}, {cluster_ids.max()}]"
            )
        if metacluster_map is not None and metacluster_map.n_clusters != n_clusters:
            raise InvalidConfiguration(
                f"metacluster map covers {metacluster_map.n_clusters} clusters, "
                f"assignment has {n_clusters}"
            )

        cluster_ids.setflags(write=False)
        self.cluster_ids = cluster_ids
        self.n_clusters = n_clusters
        self.metacluster_map = metacluster_map
        self._metacluster_ids = None

    @classmethod
    def from_grid(cls, grid, cluster_ids, metacluster_map=None):
        return cls(cluster_ids, grid.n_nodes, metacluster_map)

    @property
    def n_cells(self) -> int:
        return len(self.cluster_ids)

    @property
    def n_metaclusters(self) -> int:
        self._require_metaclusters()
        return self.metacluster_map.n_metaclusters

    @property
    def metacluster_ids(self) -> np.ndarray:
        """Metacluster id for every cell."""
        self._require_metaclusters()
        if self._metacluster_ids is None:
            ids = self.metacluster_map.lookup(self.cluster_ids)
            ids.setflags(write=False)
            self._metacluster_ids = ids
        return self._metacluster_ids

    def _require_metaclusters(self):
        if self.metacluster_map is None:
            raise ValueError("No metacluster map attached to this assignment")

    def with_metaclusters(self, metacluster_map) -> 'ClusterAssignment':
        return ClusterAssignment(self.cluster_ids, self.n_clusters, metacluster_map)

    def cluster_counts(self) -> np.ndarray:
        """Cell count per cluster id 1..n_clusters."""
        return np.bincount(self.cluster_ids - 1, minlength=self.n_clusters)

    def metacluster_counts(self) -> np.ndarray:
        """Cell count per metacluster id 1..n_metaclusters."""
        return np.bincount(self.metacluster_ids - 1, minlength=self.n_metaclusters)

    def empty_clusters(self) -> list:
        return (np.flatnonzero(self.cluster_counts() == 0) + 1).tolist()

    def empty_metaclusters(self) -> list:
        return (np.flatnonzero(self.metacluster_counts() == 0) + 1).tolist()

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({'cluster': self.cluster_ids})
        if self.metacluster_map is not None:
            frame['metacluster'] = self.metacluster_ids
        return frame
