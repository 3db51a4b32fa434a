"""Marker gene detection.

Example Usage
-------------
>>> from scclust.core.markers import MarkerTester
>>> markers = MarkerTester(config).find_all_markers(normalized, assignment)
>>> markers.combined().head()
"""

from .de import (
    AllMarkersResult,
    MARKER_COLUMNS,
    MarkerResult,
    MarkerTester,
    ROC_COLUMNS,
    detection_rate,
)

__all__ = [
    "AllMarkersResult",
    "MARKER_COLUMNS",
    "MarkerResult",
    "MarkerTester",
    "ROC_COLUMNS",
    "detection_rate",
]
