"""
Keyframe and local map policies.

The localizer and the map manager only ask three questions about map quality;
the answers are delegated to a policy object so that thresholds and tie-break
rules can be swapped and tested on their own.
"""

import logging
from typing import Hashable, Protocol, Sequence

from .local_map import LocalMap

logger = logging.getLogger(__name__)


class KeyframePolicy(Protocol):
    """Decision hooks for map quality."""

    def has_enough_overlap(self, overlap: float) -> bool:
        """True when a scan with this overlap is still safely trackable."""
        ...

    def needs_new_keyframe(self, overlap: float) -> bool:
        """True when the scan should become a new keyframe."""
        ...

    def is_better_composition(self, candidate: Sequence[Hashable], local_map: LocalMap) -> bool:
        """True when adopting the candidate composition is worth a rebuild."""
        ...


class OverlapRangePolicy:
    """Overlap-range policy.

    Overlap below ``overlap_range_min`` is a trackability risk. Overlap below
    ``overlap_range_max`` means the current local map no longer covers the
    scan well and a new keyframe should be inserted. A candidate composition
    is better than the loaded one whenever it differs from it.

    Attributes:
        overlap_range_min: Minimum acceptable overlap in [0, 1]
        overlap_range_max: Overlap under which a keyframe is inserted, in [min, 1]
    """

    def __init__(self, overlap_range_min: float, overlap_range_max: float):
        if not 0.0 <= overlap_range_min <= overlap_range_max <= 1.0:
            raise ValueError(
                f"Overlap range must satisfy 0 <= min <= max <= 1, got [{overlap_range_min}, {overlap_range_max}]"
            )
        self.overlap_range_min = float(overlap_range_min)
        self.overlap_range_max = float(overlap_range_max)

    def has_enough_overlap(self, overlap: float) -> bool:
        return overlap >= self.overlap_range_min

    def needs_new_keyframe(self, overlap: float) -> bool:
        return overlap < self.overlap_range_max

    def is_better_composition(self, candidate: Sequence[Hashable], local_map: LocalMap) -> bool:
        if len(candidate) == 0:
            return False
        if len(local_map) == 0:
            return True
        return not local_map.has_same_composition(candidate)
