from pathlib import Path

import pandas as pd
import pytest

from src.sim.config import (
    EXPERIMENTS,
    ExperimentDefinition,
    MetricDefinition,
    SampleSizeConfig,
    SimulationConfig,
    TrafficConfig,
    Variation,
    config_from_dict,
    load_config,
)
from src.sim.errors import ConfigurationError

SHIPPED_CONFIG = Path(__file__).resolve().parents[1] / "config" / "simulation.yaml"


def _experiment(**kw):
    params = dict(
        experiment_id="exp",
        variations=(Variation("a", is_control=True), Variation("b")),
        paths=("example.com",),
    )
    params.update(kw)
    return ExperimentDefinition(**params)


def test_default_config_valid():
    config = SimulationConfig()
    assert len(config.experiments) == 4
    assert [m.attribution_window for m in config.metrics] == [2, 3, 5, 7]
    for exp in EXPERIMENTS:
        assert sum(v.is_control for v in exp.variations) == 1

def test_shipped_yaml_matches_defaults():
    assert load_config(SHIPPED_CONFIG) == SimulationConfig()

def test_missing_control():
    with pytest.raises(ConfigurationError, match="exactly one control"):
        _experiment(variations=(Variation("a"), Variation("b")))

def test_two_controls():
    with pytest.raises(ConfigurationError, match="exactly one control"):
        _experiment(variations=(Variation("a", is_control=True), Variation("b", is_control=True)))

def test_duplicate_variation_names():
    with pytest.raises(ConfigurationError, match="unique"):
        _experiment(variations=(Variation("a", is_control=True), Variation("a")))

def test_needs_two_variations():
    with pytest.raises(ConfigurationError, match="at least 2"):
        _experiment(variations=(Variation("a", is_control=True),))

def test_control_cannot_be_adjusted():
    with pytest.raises(ConfigurationError, match="Control"):
        Variation("a", is_control=True, adjustments={"Sign Up": 0.1})

def test_adjustment_must_exceed_minus_one():
    with pytest.raises(ConfigurationError, match="> -1"):
        Variation("b", adjustments={"Sign Up": -1.0})

def test_configuration_errors_are_value_errors():
    with pytest.raises(ValueError):
        MetricDefinition("m", 0.0, 2)
    with pytest.raises(ValueError):
        MetricDefinition("m", 0.1, 0)

def test_unknown_path_rejected():
    with pytest.raises(ConfigurationError, match="unknown paths"):
        SimulationConfig(experiments=(_experiment(paths=("nowhere.com",)),))

def test_unknown_metric_adjustment_rejected():
    exp = _experiment(variations=(Variation("a", is_control=True), Variation("b", adjustments={"Nope": 0.1})))
    with pytest.raises(ConfigurationError, match="unknown metrics"):
        SimulationConfig(experiments=(exp,))

def test_bad_traffic_weights():
    with pytest.raises(ConfigurationError):
        TrafficConfig(paths=("a", "b"), path_weights=(1.0,))

def test_partial_override_keeps_defaults():
    config = config_from_dict({"traffic": {"num_draws": 1000}, "today": "2024-06-01"})
    assert config.traffic.num_draws == 1000
    assert config.traffic.paths == TrafficConfig().paths
    assert config.experiments == EXPERIMENTS
    assert config.resolve_today() == pd.Timestamp("2024-06-01")

def test_malformed_section_is_configuration_error():
    with pytest.raises(ConfigurationError, match="Malformed"):
        config_from_dict({"metrics": [{"id": "m"}]})

def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")

def test_load_yaml(tmp_path):
    path = tmp_path / "sim.yaml"
    path.write_text(
        "today: 2024-03-01\n"
        "seeds: {population: 1, traffic: 2, conversion: 3, latency: 4}\n"
        "metrics:\n"
        "  - {id: Sign Up, baseline_conversion_rate: 0.2, attribution_window: 3}\n"
        "experiments:\n"
        "  - id: e1\n"
        "    paths: [example.com]\n"
        "    variations:\n"
        "      - {name: A, control: true}\n"
        "      - {name: B, adjustments: {Sign Up: 0.5}}\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.seeds.latency == 4
    assert config.metrics[0].baseline_conversion_rate == 0.2
    assert config.experiments[0].variations[1].adjustments == {"Sign Up": 0.5}
    assert config.resolve_today() == pd.Timestamp("2024-03-01")

@pytest.mark.parametrize("kw, match", [
    ({"alpha": 2.0}, "alpha"),
    ({"power": 0.0}, "power"),
    ({"relative_lift": 0.0}, "relative_lift"),
    ({"relative_lift": -1.5}, "relative_lift"),
    ({"baseline_rates": ()}, "baseline_rates"),
    ({"baseline_rates": (0.05, 1.2)}, "baseline_rates"),
    ({"baseline_rates": (0.98,), "relative_lift": 0.05}, "baseline_rates"),
])
def test_bad_sample_size(kw, match):
    with pytest.raises(ConfigurationError, match=match):
        SampleSizeConfig(**kw)

def test_sample_size_section_is_validated():
    with pytest.raises(ConfigurationError, match="alpha"):
        config_from_dict({"sample_size": {"alpha": 2.0}})

def test_non_numeric_value_is_configuration_error():
    with pytest.raises(ConfigurationError, match="Malformed"):
        config_from_dict({"metrics": [{"id": "m", "baseline_conversion_rate": "abc", "attribution_window": 3}]})

def test_bad_today_is_configuration_error():
    with pytest.raises(ConfigurationError, match="Malformed"):
        config_from_dict({"today": "not a date"})

def test_invalid_yaml(tmp_path):
    path = tmp_path / "sim.yaml"
    path.write_text("traffic: {num_draws: [1, 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="invalid YAML"):
        load_config(path)
