"""Simulation parameters: traffic shape, metrics, experiments and seeds.

The defaults reproduce the reference dataset: four two-arm experiments
running over roughly three months of traffic on a small marketing site,
each tracked on the same four metrics.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

import pandas as pd
import yaml

from src.sim.errors import ConfigurationError


@dataclass(frozen=True)
class Variation:
    name: str
    is_control: bool = False
    # metric_id -> relative change to the metric's baseline rate (0.10 = +10%)
    adjustments: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Variation name must be non-empty")
        for metric_id, adj in self.adjustments.items():
            if adj <= -1:
                raise ConfigurationError(
                    f"Variation {self.name!r}: adjustment for {metric_id!r} must be > -1, got {adj}"
                )
            if self.is_control and adj != 0:
                raise ConfigurationError(
                    f"Control variation {self.name!r} cannot adjust {metric_id!r}"
                )


@dataclass(frozen=True)
class ExperimentDefinition:
    experiment_id: str
    variations: Tuple[Variation, ...]
    # Schedule relative to the first day of simulated traffic
    start_offset_days: int = 30
    duration_days: int = 30
    paths: Tuple[str, ...] = ()

    def __post_init__(self):
        if len(self.variations) < 2:
            raise ConfigurationError(f"Experiment {self.experiment_id!r} must have at least 2 variations")
        names = [v.name for v in self.variations]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Experiment {self.experiment_id!r}: variation names must be unique")
        controls = [v.name for v in self.variations if v.is_control]
        if len(controls) != 1:
            raise ConfigurationError(
                f"Experiment {self.experiment_id!r} must have exactly one control, got {len(controls)}"
            )
        if self.duration_days <= 0:
            raise ConfigurationError(f"Experiment {self.experiment_id!r}: duration_days must be positive")
        if self.start_offset_days < 0:
            raise ConfigurationError(f"Experiment {self.experiment_id!r}: start_offset_days must be >= 0")
        if not self.paths:
            raise ConfigurationError(f"Experiment {self.experiment_id!r} has no eligible paths")

    @property
    def variation_names(self) -> Tuple[str, ...]:
        return tuple(v.name for v in self.variations)


@dataclass(frozen=True)
class MetricDefinition:
    metric_id: str
    baseline_conversion_rate: float
    # Days after enrollment a conversion can still be credited to an experiment
    attribution_window: int

    def __post_init__(self):
        if not 0.0 < self.baseline_conversion_rate < 1.0:
            raise ConfigurationError(
                f"Metric {self.metric_id!r}: baseline_conversion_rate must be in (0, 1)"
            )
        if int(self.attribution_window) != self.attribution_window or self.attribution_window <= 0:
            raise ConfigurationError(
                f"Metric {self.metric_id!r}: attribution_window must be a positive integer"
            )


@dataclass(frozen=True)
class TrafficConfig:
    # Number of id draws; each draw becomes one visit
    num_draws: int = 200_000
    # Ids are drawn from [1, num_draws * id_space_fraction)
    id_space_fraction: float = 0.8
    horizon_days: int = 180
    exponential_rate: float = 0.9
    # First visits older than horizon * guard_start_fraction are dropped ...
    guard_start_fraction: float = 0.55
    # ... and so are visits within the last guard_end_days days
    guard_end_days: int = 7
    # Scale of the gamma offset between a first visit and each repeat visit
    revisit_scale_days: float = 4.0
    # Weighted toward the landing page
    paths: Tuple[str, ...] = (
        "example.com",
        "example.com/features",
        "example.com/pricing",
        "example.com/demo",
    )
    path_weights: Tuple[float, ...] = (4.0, 3.0, 2.0, 1.0)

    def __post_init__(self):
        if self.num_draws <= 0:
            raise ConfigurationError("traffic.num_draws must be positive")
        if not 0.0 < self.id_space_fraction <= 1.0:
            raise ConfigurationError("traffic.id_space_fraction must be in (0, 1]")
        if self.horizon_days <= self.guard_end_days:
            raise ConfigurationError("traffic.horizon_days must exceed traffic.guard_end_days")
        if not 0.0 < self.guard_start_fraction <= 1.0:
            raise ConfigurationError("traffic.guard_start_fraction must be in (0, 1]")
        if self.exponential_rate <= 0 or self.revisit_scale_days <= 0:
            raise ConfigurationError("traffic.exponential_rate and traffic.revisit_scale_days must be positive")
        if len(self.paths) != len(self.path_weights) or not self.paths:
            raise ConfigurationError("traffic.paths and traffic.path_weights must be non-empty and the same length")
        if len(set(self.paths)) != len(self.paths):
            raise ConfigurationError("traffic.paths must be unique")
        if any(w <= 0 for w in self.path_weights):
            raise ConfigurationError("traffic.path_weights must be positive")


@dataclass(frozen=True)
class SampleSizeConfig:
    # Baseline rates for which "percent of required sample" is reported
    baseline_rates: Tuple[float, ...] = (0.03, 0.05, 0.07, 0.10)
    relative_lift: float = 0.05
    power: float = 0.80
    alpha: float = 0.05

    def __post_init__(self):
        for name in ("power", "alpha"):
            value = getattr(self, name)
            if not 0.0 < value < 1.0:
                raise ConfigurationError(f"sample_size.{name} must be in (0, 1), got {value}")
        if self.relative_lift <= -1 or self.relative_lift == 0:
            raise ConfigurationError(
                f"sample_size.relative_lift must be > -1 and non-zero, got {self.relative_lift}"
            )
        if not self.baseline_rates:
            raise ConfigurationError("sample_size.baseline_rates must not be empty")
        for rate in self.baseline_rates:
            if not 0.0 < rate < 1.0 or rate * (1 + self.relative_lift) >= 1.0:
                raise ConfigurationError(
                    f"sample_size.baseline_rates: {rate} must be in (0, 1) and stay below 1 after the lift"
                )


@dataclass(frozen=True)
class SeedConfig:
    population: int = 42
    traffic: int = 7
    conversion: int = 1
    latency: int = 2


METRICS: Tuple[MetricDefinition, ...] = (
    MetricDefinition("Sign Up", 0.10, 2),
    MetricDefinition("Use Feature 1", 0.07, 3),
    MetricDefinition("Talk to Sales", 0.05, 5),
    MetricDefinition("Pay/Subscribe", 0.03, 7),
)

EXPERIMENTS: Tuple[ExperimentDefinition, ...] = (
    ExperimentDefinition(
        experiment_id="Redesign Website",
        variations=(
            Variation("Original", is_control=True),
            Variation("Site Redesign", adjustments={
                "Sign Up": 0.10, "Use Feature 1": 0.07, "Talk to Sales": 0.07, "Pay/Subscribe": 0.05,
            }),
        ),
        start_offset_days=31,
        duration_days=30,
        paths=("example.com", "example.com/features", "example.com/pricing", "example.com/demo"),
    ),
    ExperimentDefinition(
        experiment_id="New Signup CTA Color",
        variations=(
            Variation("Green Signup CTA", is_control=True),
            Variation("Blue Signup CTA", adjustments={"Sign Up": -0.08, "Use Feature 1": -0.08}),
        ),
        start_offset_days=40,
        duration_days=30,
        paths=("example.com/features", "example.com/demo"),
    ),
    ExperimentDefinition(
        experiment_id="Show Discount for First-Time Visitors",
        variations=(
            Variation("No Offer", is_control=True),
            Variation("Sales Offer", adjustments={
                "Sign Up": 0.04, "Use Feature 1": 0.04, "Talk to Sales": 0.15, "Pay/Subscribe": 0.15,
            }),
        ),
        start_offset_days=60,
        duration_days=25,
        paths=("example.com/pricing", "example.com/demo"),
    ),
    ExperimentDefinition(
        experiment_id="Ask Additional Questions During Signup",
        variations=(
            Variation("Old Signup Path", is_control=True),
            Variation("New Signup Path", adjustments={"Sign Up": -0.10, "Use Feature 1": 0.10}),
        ),
        start_offset_days=75,
        duration_days=30,
        paths=("example.com", "example.com/features", "example.com/pricing", "example.com/demo"),
    ),
)


@dataclass(frozen=True)
class SimulationConfig:
    traffic: TrafficConfig = field(default_factory=TrafficConfig)
    metrics: Tuple[MetricDefinition, ...] = METRICS
    experiments: Tuple[ExperimentDefinition, ...] = EXPERIMENTS
    sample_size: SampleSizeConfig = field(default_factory=SampleSizeConfig)
    seeds: SeedConfig = field(default_factory=SeedConfig)
    # Trials of the binomial conversion-latency draw
    latency_trials: int = 30
    # Reference date; None means today at midnight
    today: Optional[pd.Timestamp] = None

    def __post_init__(self):
        metric_ids = [m.metric_id for m in self.metrics]
        if not metric_ids:
            raise ConfigurationError("At least one metric is required")
        if len(metric_ids) != len(set(metric_ids)):
            raise ConfigurationError("Metric ids must be unique")
        exp_ids = [e.experiment_id for e in self.experiments]
        if len(exp_ids) != len(set(exp_ids)):
            raise ConfigurationError("Experiment ids must be unique")
        if self.latency_trials <= 0:
            raise ConfigurationError("latency_trials must be positive")
        known_paths = set(self.traffic.paths)
        for exp in self.experiments:
            unknown = sorted(set(exp.paths) - known_paths)
            if unknown:
                raise ConfigurationError(f"Experiment {exp.experiment_id!r} uses unknown paths: {unknown}")
            for v in exp.variations:
                unknown = sorted(set(v.adjustments) - set(metric_ids))
                if unknown:
                    raise ConfigurationError(
                        f"Experiment {exp.experiment_id!r} variation {v.name!r} adjusts unknown metrics: {unknown}"
                    )

    def resolve_today(self) -> pd.Timestamp:
        if self.today is None:
            return pd.Timestamp.today().normalize()
        return pd.Timestamp(self.today).normalize()


def _variation_from_dict(raw: dict) -> Variation:
    return Variation(
        name=str(raw["name"]),
        is_control=bool(raw.get("control", False)),
        adjustments={str(k): float(v) for k, v in (raw.get("adjustments") or {}).items()},
    )

def _experiment_from_dict(raw: dict) -> ExperimentDefinition:
    return ExperimentDefinition(
        experiment_id=str(raw["id"]),
        variations=tuple(_variation_from_dict(v) for v in raw.get("variations", [])),
        start_offset_days=int(raw.get("start_offset_days", 30)),
        duration_days=int(raw.get("duration_days", 30)),
        paths=tuple(raw.get("paths", ())),
    )

def _metric_from_dict(raw: dict) -> MetricDefinition:
    return MetricDefinition(
        metric_id=str(raw["id"]),
        baseline_conversion_rate=float(raw["baseline_conversion_rate"]),
        attribution_window=int(raw["attribution_window"]),
    )

def _traffic_from_dict(raw: dict) -> TrafficConfig:
    raw = dict(raw)
    paths = raw.pop("paths", None)
    kwargs = {k: v for k, v in raw.items() if k in TrafficConfig.__dataclass_fields__}
    if paths is not None:
        kwargs["paths"] = tuple(paths.keys())
        kwargs["path_weights"] = tuple(float(w) for w in paths.values())
    return TrafficConfig(**kwargs)

def config_from_dict(cfg: dict) -> SimulationConfig:
    """Build a SimulationConfig, falling back to defaults for any missing section."""
    try:
        config = SimulationConfig()
        overrides = {}
        if "traffic" in cfg:
            overrides["traffic"] = _traffic_from_dict(cfg["traffic"] or {})
        if "metrics" in cfg:
            overrides["metrics"] = tuple(_metric_from_dict(m) for m in cfg["metrics"])
        if "experiments" in cfg:
            overrides["experiments"] = tuple(_experiment_from_dict(e) for e in cfg["experiments"])
        if "sample_size" in cfg:
            raw = dict(cfg["sample_size"] or {})
            if "baseline_rates" in raw:
                raw["baseline_rates"] = tuple(float(r) for r in raw["baseline_rates"])
            overrides["sample_size"] = SampleSizeConfig(**raw)
        if "seeds" in cfg:
            overrides["seeds"] = SeedConfig(**(cfg["seeds"] or {}))
        if "latency_trials" in cfg:
            overrides["latency_trials"] = int(cfg["latency_trials"])
        if cfg.get("today") is not None:
            overrides["today"] = pd.Timestamp(str(cfg["today"]))
        return replace(config, **overrides)
    except ConfigurationError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed configuration: {e}") from e

def load_config(path: str | Path) -> SimulationConfig:
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Missing config file: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{cfg_path}: invalid YAML: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{cfg_path}: top level must be a mapping")
    return config_from_dict(cfg)
