#!/usr/bin/env python3
"""
Expression matrix container and the preprocessing steps applied to it.

An ExpressionMatrix holds per-cell marker intensities together with the
marker names and the underlying channel identifiers. Helpers in this module
clean marker names, apply the asinh transform, pick the marker subset used
for clustering and draw random cell subsets for visualization.
"""

import re
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.utils import check_random_state

from cytometry_errors import EmptyInput, InvalidConfiguration, InvalidSubset


DEFAULT_SURFACE_PATTERNS = ("CD", "Ig", "HLA", "CCR", "CXC")

# Values written into $PnS by acquisition software when no marker was set
_PLACEHOLDER_NAMES = {"", "nan", "none", "null", "na", "n/a", "-"}

_ISOTOPE_PREFIX = re.compile(r"^\d{2,3}[A-Z][a-z]?[_\-\s]+")
_DETECTOR_SUFFIX = re.compile(r"\s*\(\s*[A-Za-z]{1,2}\d{2,3}\s*(Di|Dd)?\s*\)\s*$")


@dataclass(frozen=True, eq=False)
class ExpressionMatrix:
    """Cells x markers intensity matrix with its marker name mapping."""

    values: np.ndarray
    marker_names: List[str]
    channel_names: List[str] = field(default_factory=list)

    def __post_init__(self):
        values = np.asarray(self.values, dtype=float)
        if values.ndim != 2:
            raise EmptyInput(f"expression matrix must be 2-dimensional, got shape {values.shape}")
        if len(self.marker_names) != values.shape[1]:
            raise InvalidConfiguration(
                f"{len(self.marker_names)} marker names given for {values.shape[1]} columns"
            )
        channel_names = list(self.channel_names) or list(self.marker_names)
        if len(channel_names) != values.shape[1]:
            raise InvalidConfiguration(
                f"{len(channel_names)} channel names given for {values.shape[1]} columns"
            )
        values = values.copy()
        values.setflags(write=False)
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'marker_names', list(self.marker_names))
        object.__setattr__(self, 'channel_names', channel_names)

    @property
    def n_cells(self) -> int:
        return self.values.shape[0]

    @property
    def n_markers(self) -> int:
        return self.values.shape[1]

    def columns(self, subset: Sequence[int]) -> np.ndarray:
        """Return the values of the given marker columns."""
        validate_subset(self, subset)
        return self.values[:, list(subset)]

    def take_rows(self, rows: Sequence[int]) -> 'ExpressionMatrix':
        return ExpressionMatrix(self.values[np.asarray(rows, dtype=int)],
                                self.marker_names, self.channel_names)

    def to_frame(self) -> pd.DataFrame:
        """DataFrame view with marker names as columns (duplicates allowed)."""
        return pd.DataFrame(self.values, columns=self.marker_names)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> 'ExpressionMatrix':
        names = [str(c) for c in frame.columns]
        return cls(frame.to_numpy(dtype=float), names, names)


def clean_marker_names(marker_names: Sequence, channel_names: Sequence[str]) -> List[str]:
    """
    Make marker names human readable.

    Missing or placeholder descriptions fall back to the channel identifier.
    Mass cytometry isotope prefixes ("151Eu_CD123") and detector suffixes
    ("CD3 (Er170Di)") are stripped.

    Args:
        marker_names: Marker descriptions ($PnS), may contain None/NaN
        channel_names: Channel identifiers ($PnN)

    Returns:
        List of cleaned names, one per channel
    """
    if len(marker_names) != len(channel_names):
        raise InvalidConfiguration(
            f"{len(marker_names)} marker names given for {len(channel_names)} channels"
        )

    cleaned = []
    for marker, channel in zip(marker_names, channel_names):
        name = "" if marker is None else str(marker).strip()
        if name.lower() in _PLACEHOLDER_NAMES:
            cleaned.append(str(channel))
            continue
        stripped = _DETECTOR_SUFFIX.sub("", _ISOTOPE_PREFIX.sub("", name)).strip()
        cleaned.append(stripped or str(channel))
    return cleaned


def arcsinh_transform(matrix: ExpressionMatrix, cofactor: float = 5.0) -> ExpressionMatrix:
    """Apply asinh(x / cofactor) to every value; 5 is the usual cofactor for mass cytometry."""
    if not cofactor > 0:
        raise InvalidConfiguration(f"asinh cofactor must be positive, got {cofactor}")
    return ExpressionMatrix(np.arcsinh(matrix.values / cofactor),
                            matrix.marker_names, matrix.channel_names)


def select_markers(marker_names: Sequence[str],
                   patterns: Sequence[str] = DEFAULT_SURFACE_PATTERNS) -> Tuple[int, ...]:
    """
    Select marker columns whose name contains any of the patterns.

    The result is the union over patterns, so pattern order does not matter.

    Returns:
        Sorted tuple of column indices
    """
    selected = set()
    for pattern in patterns:
        selected.update(i for i, name in enumerate(marker_names) if pattern in str(name))
    return tuple(sorted(selected))


def validate_subset(matrix: ExpressionMatrix, subset: Sequence[int]) -> None:
    if len(subset) == 0:
        raise InvalidSubset("marker subset is empty")
    bad = [int(i) for i in subset if not 0 <= int(i) < matrix.n_markers]
    if bad:
        raise InvalidSubset(
            f"marker subset references column(s) {bad} but the matrix has "
            f"{matrix.n_markers} columns"
        )


def subsample_cells(n_cells: int, n: int, random_state=None) -> np.ndarray:
    """Sorted random row indices without replacement (all rows if n >= n_cells)."""
    if n >= n_cells:
        return np.arange(n_cells)
    rng = check_random_state(random_state)
    return np.sort(rng.choice(n_cells, size=n, replace=False))
