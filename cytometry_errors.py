#!/usr/bin/env python3
"""
Error types raised by the clustering pipeline.

All errors derive from ValueError so existing callers that catch ValueError
keep working, and from CytometryClusteringError so the whole family can be
caught at once.
"""


class CytometryClusteringError(ValueError):
    """Base class for clustering pipeline errors."""


class EmptyInput(CytometryClusteringError):
    """Raised when the expression matrix has zero cells or zero markers."""


class InvalidSubset(CytometryClusteringError):
    """Raised when a marker subset is empty or references a missing column."""


class InvalidConfiguration(CytometryClusteringError):
    """Raised for non-positive dimensions or a grid too small for the metacluster count."""


class MergeInfeasible(CytometryClusteringError):
    """Raised when the dendrogram cannot be cut to the requested number of groups."""


class EmptyMetacluster(CytometryClusteringError):
    """Raised when mean expression is requested for metaclusters without cells."""

    def __init__(self, metacluster_ids):
        self.metacluster_ids = sorted(int(m) for m in metacluster_ids)
        super().__init__(
            f"metacluster(s) {self.metacluster_ids} have no assigned cells; "
            f"mean expression is undefined"
        )
