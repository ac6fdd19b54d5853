#!/usr/bin/env python3
"""
Self-organizing map clustering for cytometry expression data.

The map is a 2D grid of prototype vectors trained by online competitive
learning: every presented cell pulls its best-matching prototype, and the
prototypes within the current grid radius of it, towards the cell. Learning
rate and radius both decay linearly over a fixed number of epochs; there is
no convergence test. After training every cell is assigned to its nearest
prototype, which gives the cell's cluster id (1-based).
"""

from dataclasses import dataclass

import numpy as np
from minisom import MiniSom
from scipy.spatial.distance import cdist
from sklearn.base import BaseEstimator, ClusterMixin
from sklearn.utils import check_random_state
from sklearn.utils.validation import check_is_fitted

from cytometry_errors import EmptyInput, InvalidConfiguration, InvalidSubset
from expression_matrix import validate_subset


ASSIGN_CHUNK_SIZE = 4096


@dataclass(frozen=True, eq=False)
class SOMGrid:
    """
    Trained prototype grid.

    Row k of `prototypes` is the node at grid position (k % xdim, k // xdim)
    and corresponds to cluster id k + 1.
    """

    xdim: int
    ydim: int
    prototypes: np.ndarray

    def __post_init__(self):
        prototypes = np.array(self.prototypes, dtype=float)
        if prototypes.ndim != 2 or prototypes.shape[0] != self.xdim * self.ydim:
            raise InvalidConfiguration(
                f"grid {self.xdim}x{self.ydim} needs {self.xdim * self.ydim} prototypes, "
                f"got array of shape {prototypes.shape}"
            )
        prototypes.setflags(write=False)
        object.__setattr__(self, 'prototypes', prototypes)

    @property
    def n_nodes(self) -> int:
        return self.xdim * self.ydim

    @property
    def n_features(self) -> int:
        return self.prototypes.shape[1]

    def grid_positions(self) -> np.ndarray:
        nodes = np.arange(self.n_nodes)
        return np.column_stack([nodes % self.xdim, nodes // self.xdim])

    def grid_distances(self) -> np.ndarray:
        return _grid_distances(self.xdim, self.ydim)

    def nearest_nodes(self, X) -> np.ndarray:
        """0-based index of the best-matching prototype for every row of X."""
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != self.n_features:
            raise InvalidSubset(
                f"expected data with {self.n_features} marker columns, got shape {X.shape}"
            )
        nearest = np.empty(X.shape[0], dtype=int)
        for start in range(0, X.shape[0], ASSIGN_CHUNK_SIZE):
            chunk = X[start:start + ASSIGN_CHUNK_SIZE]
            nearest[start:start + len(chunk)] = cdist(chunk, self.prototypes, 'sqeuclidean').argmin(axis=1)
        return nearest

    def assign(self, X) -> np.ndarray:
        """1-based cluster id for every row of X."""
        return self.nearest_nodes(X) + 1


def _grid_distances(xdim, ydim):
    """Chebyshev distance between node positions, so the 8 surrounding nodes are at distance 1."""
    nodes = np.arange(xdim * ydim)
    positions = np.column_stack([nodes % xdim, nodes // xdim])
    return cdist(positions, positions, metric='chebyshev')


def _nodes_to_weights(codes, xdim, ydim):
    """Node-ordered prototypes (node k at x = k % xdim, y = k // xdim) as a MiniSom weight array."""
    return codes.reshape(ydim, xdim, -1).transpose(1, 0, 2)


def _weights_to_nodes(weights):
    return weights.transpose(1, 0, 2).reshape(-1, weights.shape[2])


class _LinearDecaySom(MiniSom):
    """
    MiniSom with a bubble neighbourhood whose learning rate and radius both
    decay linearly over the whole training run.

    The radius falls from `radius` to 0; every node within that Chebyshev
    distance of the winner is updated.
    """

    def __init__(self, xdim, ydim, input_len, alpha, radius, random_seed):
        # bubble neighbourhoods are strict (distance < sigma)
        super().__init__(xdim, ydim, input_len,
                         sigma=float(np.floor(radius)) + 1.0,
                         learning_rate=float(alpha[0]),
                         neighborhood_function='bubble',
                         topology='rectangular',
                         activation_distance='euclidean',
                         random_seed=random_seed)
        self._alpha = (float(alpha[0]), float(alpha[1]))
        self._radius = float(radius)

    def update(self, x, win, t, max_iteration):
        progress = t / max_iteration
        alpha_start, alpha_end = self._alpha
        learning_rate = alpha_start - (alpha_start - alpha_end) * progress
        sigma = np.floor(self._radius * (1.0 - progress)) + 1.0
        g = self.neighborhood(win, sigma) * learning_rate
        self._weights += np.einsum('ij, ijk->ijk', g, x - self._weights)


class SelfOrganizingMap(BaseEstimator, ClusterMixin):
    """
    Online self-organizing map with a scikit-learn style interface.

    Args:
        xdim: Number of grid columns
        ydim: Number of grid rows
        rlen: Number of training epochs over the (sub-sampled) cells
        alpha: (start, end) learning rate, decayed linearly
        radius: Start neighbourhood radius in grid units; defaults to the
            67th percentile of the distances between grid nodes. Decays
            linearly to 0.
        n_train_cells: Train on a random subset of this many cells
        random_state: Seed for initialization, shuffling and sub-sampling
        verbose: Let MiniSom print training progress
    """

    def __init__(self, xdim=10, ydim=10, rlen=10, alpha=(0.05, 0.01), radius=None,
                 n_train_cells=None, random_state=42, verbose=False):
        self.xdim = xdim
        self.ydim = ydim
        self.rlen = rlen
        self.alpha = alpha
        self.radius = radius
        self.n_train_cells = n_train_cells
        self.random_state = random_state
        self.verbose = verbose

    def _check_parameters(self):
        if int(self.xdim) <= 0 or int(self.ydim) <= 0:
            raise InvalidConfiguration(
                f"grid dimensions must be positive, got xdim={self.xdim}, ydim={self.ydim}"
            )
        if int(self.rlen) <= 0:
            raise InvalidConfiguration(f"number of training epochs must be positive, got rlen={self.rlen}")
        alpha_start, alpha_end = self.alpha
        if not (0 < alpha_end <= alpha_start <= 1):
            raise InvalidConfiguration(
                f"learning rate must decrease within (0, 1], got alpha={tuple(self.alpha)}"
            )
        if self.radius is not None and self.radius < 0:
            raise InvalidConfiguration(f"start radius must be non-negative, got {self.radius}")
        if self.n_train_cells is not None and int(self.n_train_cells) <= 0:
            raise InvalidConfiguration(
                f"n_train_cells must be positive, got {self.n_train_cells}"
            )

    @staticmethod
    def _validate_data(X):
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise EmptyInput(f"expected a cells x markers matrix, got shape {X.shape}")
        if X.shape[0] == 0:
            raise EmptyInput("expression matrix has no cells")
        if X.shape[1] == 0:
            raise EmptyInput("expression matrix has no marker columns")
        if not np.isfinite(X).all():
            raise ValueError("expression matrix contains NaN or infinite values")
        return X

    def fit(self, X, y=None):
        """
        Train the map on X and assign every row of X to its nearest node.

        Args:
            X: cells x markers array
            y: Ignored

        Returns:
            self
        """
        X = self._validate_data(X)
        self._check_parameters()

        rng = check_random_state(self.random_state)
        xdim, ydim = int(self.xdim), int(self.ydim)
        n_nodes = xdim * ydim

        if self.n_train_cells is not None and int(self.n_train_cells) < X.shape[0]:
            train_rows = np.sort(rng.choice(X.shape[0], size=int(self.n_train_cells), replace=False))
            X_train = X[train_rows]
        else:
            X_train = X
        n_train = X_train.shape[0]

        if self.radius is None:
            radius_start = float(np.percentile(_grid_distances(xdim, ydim), 67))
        else:
            radius_start = float(self.radius)

        som = _LinearDecaySom(xdim, ydim, X.shape[1], self.alpha, radius_start,
                              random_seed=rng.randint(np.iinfo(np.int32).max))

        init_rows = rng.choice(n_train, size=n_nodes, replace=n_train < n_nodes)
        som._weights[:] = _nodes_to_weights(X_train[init_rows], xdim, ydim)

        som.train(X_train, int(self.rlen) * n_train, random_order=True, verbose=self.verbose)

        self.grid_ = SOMGrid(xdim, ydim, _weights_to_nodes(som.get_weights()))
        self.n_features_in_ = X.shape[1]
        self.labels_ = self.grid_.assign(X)
        return self

    def predict(self, X):
        """1-based cluster id of the nearest prototype for every row of X."""
        check_is_fitted(self, 'grid_')
        return self.grid_.assign(self._validate_data(X))

    def fit_predict(self, X, y=None):
        return self.fit(X).labels_

    def quantization_error(self, X):
        """Mean Euclidean distance between each cell and its best-matching prototype."""
        check_is_fitted(self, 'grid_')
        X = self._validate_data(X)
        nearest = self.grid_.nearest_nodes(X)
        return float(np.linalg.norm(X - self.grid_.prototypes[nearest], axis=1).mean())


def train_som(matrix, subset, xdim, ydim, seed, rlen=10, alpha=(0.05, 0.01),
              radius=None, n_train_cells=None, verbose=False):
    """
    Train a SOM on the marker subset of an expression matrix.

    Args:
        matrix: ExpressionMatrix (already transformed)
        subset: Column indices used for clustering
        xdim, ydim: Grid dimensions
        seed: Random seed; identical inputs and seed give identical results

    Returns:
        (SOMGrid, cluster ids) where cluster ids are 1-based, one per cell
    """
    if matrix.n_cells == 0:
        raise EmptyInput("expression matrix has no cells")
    if matrix.n_markers == 0:
        raise EmptyInput("expression matrix has no marker columns")
    validate_subset(matrix, subset)
    if int(xdim) <= 0 or int(ydim) <= 0:
        raise InvalidConfiguration(f"grid dimensions must be positive, got xdim={xdim}, ydim={ydim}")

    som = SelfOrganizingMap(xdim=xdim, ydim=ydim, rlen=rlen, alpha=alpha, radius=radius,
                            n_train_cells=n_train_cells, random_state=seed, verbose=verbose)
    som.fit(matrix.columns(subset))
    return som.grid_, som.labels_
