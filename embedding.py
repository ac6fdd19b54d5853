#!/usr/bin/env python3
"""
2D UMAP embedding of cells for visual exploration of the clustering.
"""

import numpy as np
import umap

from cytometry_errors import EmptyInput


def embed_cells(values, n_neighbors=15, min_dist=0.1, random_state=42):
    """
    Embed cells x markers data into two dimensions.

    Args:
        values: cells x markers array (the clustering markers)
        n_neighbors: UMAP neighbourhood size, reduced for very small inputs
        min_dist: UMAP minimum distance
        random_state: Seed passed to UMAP

    Returns:
        cells x 2 array
    """
    values = np.asarray(values, dtype=float)
    if values.ndim != 2 or values.shape[0] == 0 or values.shape[1] == 0:
        raise EmptyInput(f"cannot embed data of shape {values.shape}")
    if values.shape[0] < 3:
        raise EmptyInput(f"UMAP needs at least 3 cells, got {values.shape[0]}")

    reducer = umap.UMAP(
        n_neighbors=min(n_neighbors, values.shape[0] - 1),
        min_dist=min_dist,
        n_components=2,
        random_state=random_state,
    )
    return reducer.fit_transform(values)
