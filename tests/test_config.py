import pytest

from pgslam.localization.config import LocalizerConfig, load_localizer_config
from pgslam.utils.io import load_yaml_config


def test_from_dict_reads_localizer_section():
    cfg = LocalizerConfig.from_dict({
        'localizer': {
            'overlap_range': {'min': 0.4, 'max': 0.8},
            'local_map_capacity': 3,
            'queue_max_size': 10,
            'local_icp_config': 'icp.yaml',
        }
    })
    assert cfg.overlap_range_min == 0.4
    assert cfg.overlap_range_max == 0.8
    assert cfg.local_map_capacity == 3
    assert cfg.queue_max_size == 10
    assert cfg.local_icp_config == 'icp.yaml'
    assert cfg.input_filters_config is None


def test_defaults():
    cfg = LocalizerConfig.from_dict({'overlap_range': {'min': 0.5, 'max': 0.5}})
    assert cfg.local_map_capacity == 5
    assert cfg.queue_max_size is None


@pytest.mark.parametrize("loc", [
    {},
    {'overlap_range': {'min': 0.5}},
    {'overlap_range': {'min': 0.9, 'max': 0.5}},
    {'overlap_range': {'min': 'low', 'max': 0.5}},
    {'overlap_range': {'min': 0.1, 'max': 0.5}, 'local_map_capacity': 0},
    {'overlap_range': {'min': 0.1, 'max': 0.5}, 'queue_max_size': 0},
])
def test_invalid_config(loc):
    with pytest.raises(ValueError):
        LocalizerConfig.from_dict({'localizer': loc})


def test_load_localizer_config(tmp_path):
    path = tmp_path / "localizer.yaml"
    path.write_text("localizer:\n  overlap_range:\n    min: 0.3\n    max: 0.7\n")
    assert load_localizer_config(str(path)).overlap_range_max == 0.7


def test_load_yaml_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(str(tmp_path / "missing.yaml"))

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("42\n")
    with pytest.raises(ValueError):
        load_yaml_config(str(scalar))

    broken = tmp_path / "broken.yaml"
    broken.write_text("a: [1, 2\n")
    with pytest.raises(ValueError):
        load_yaml_config(str(broken))
