import math

from scipy.stats import norm


def _check_open_unit(name: str, x: float) -> float:
    x = float(x)
    if not 0.0 < x < 1.0:
        raise ValueError(f"{name} must be in (0, 1), got {x}")
    return x

def required_n_per_arm(baseline_rate: float, relative_lift: float, power: float = 0.80, alpha: float = 0.05) -> int:
    """
    Equal allocation, two-sided test for difference in proportions (Wald, unpooled variance).
    baseline_rate = p0 (e.g., 0.05), relative_lift = lift relative to p0 (e.g., 0.05 for +5%).
    Returns n PER ARM.
    """
    p0 = _check_open_unit("baseline_rate", baseline_rate)
    power = _check_open_unit("power", power)
    alpha = _check_open_unit("alpha", alpha)
    relative_lift = float(relative_lift)
    if relative_lift <= -1:
        raise ValueError(f"relative_lift must be > -1, got {relative_lift}")
    if relative_lift == 0:
        raise ValueError("relative_lift must be non-zero")
    p1 = p0 * (1 + relative_lift)
    if p1 >= 1:
        raise ValueError(f"baseline_rate * (1 + relative_lift) must be < 1, got {p1}")

    z_alpha = norm.ppf(1 - alpha / 2)
    z_beta = norm.ppf(power)
    variance = p0 * (1 - p0) + p1 * (1 - p1)
    n = ((z_alpha + z_beta) ** 2) * variance / ((p1 - p0) ** 2)
    return int(math.ceil(n))

def required_sample_size(baseline_rate: float, relative_lift: float, power: float = 0.80, alpha: float = 0.05) -> int:
    """
    TOTAL sample size of a two-arm test, i.e. 2 * required_n_per_arm.
    Only used to describe how much of the needed traffic an experiment has reached.
    """
    return 2 * required_n_per_arm(baseline_rate, relative_lift, power=power, alpha=alpha)
