"""
Localizer configuration loaded from YAML.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..utils.io import load_yaml_config


@dataclass
class LocalizerConfig:
    """Configuration for the localizer and its map manager.

    Attributes:
        overlap_range_min: Overlap under which tracking is reported at risk
        overlap_range_max: Overlap under which a new keyframe is inserted
        local_map_capacity: Maximum keyframes in a local map
        queue_max_size: Bound of the observation queue (None = unbounded)
        local_icp_config: Optional path of the ICP YAML descriptor
        input_filters_config: Optional path of the input filter YAML descriptor
    """
    overlap_range_min: float
    overlap_range_max: float
    local_map_capacity: int = 5
    queue_max_size: Optional[int] = None
    local_icp_config: Optional[str] = None
    input_filters_config: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.overlap_range_min <= self.overlap_range_max <= 1.0:
            raise ValueError(
                f"Overlap range must satisfy 0 <= min <= max <= 1, got "
                f"[{self.overlap_range_min}, {self.overlap_range_max}]"
            )
        if self.local_map_capacity < 1:
            raise ValueError("local_map_capacity must be >= 1")
        if self.queue_max_size is not None and self.queue_max_size < 1:
            raise ValueError("queue_max_size must be None or >= 1")

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "LocalizerConfig":
        loc = cfg.get('localizer', cfg)
        try:
            overlap = loc['overlap_range']
            queue_max_size = loc.get('queue_max_size')
            return cls(
                overlap_range_min=float(overlap['min']),
                overlap_range_max=float(overlap['max']),
                local_map_capacity=int(loc.get('local_map_capacity', 5)),
                queue_max_size=int(queue_max_size) if queue_max_size is not None else None,
                local_icp_config=loc.get('local_icp_config'),
                input_filters_config=loc.get('input_filters_config'),
            )
        except KeyError as e:
            raise ValueError(f"Missing localizer configuration key: {e}") from e
        except (TypeError, ValueError) as e:
            raise ValueError(f"Malformed localizer configuration: {e}") from e


def load_localizer_config(path: str) -> LocalizerConfig:
    return LocalizerConfig.from_dict(load_yaml_config(path))
