"""Validation contract for the generated tables.

Conversions are anchored to the user's first site visit, not to enrollment,
so conversion dates are checked against first visit <= conversion <= last
visit rather than conversion >= enrollment. Enrollments are checked against
their experiment's date bounds and must match an actual visit.
"""

from typing import Dict, Optional, Tuple

import pandas as pd

from src.sim.errors import DataValidationError

REQUIRED_COLS = {
    "experiment_info": ["experiment_id", "variation", "is_control"],
    "attribution_windows": ["experiment_id", "metric_id", "attribution_window"],
    "website_traffic": ["user_id", "visit_date", "path"],
    "experiment_traffic": ["user_id", "first_joined_experiment", "path", "experiment_id", "variation"],
    "conversion_events": ["user_id", "metric_id", "conversion_date"],
}


def _require_columns(df: pd.DataFrame, table: str) -> None:
    missing = [c for c in REQUIRED_COLS[table] if c not in df.columns]
    if missing:
        raise DataValidationError(table, f"missing required columns: {missing}")
    if df[REQUIRED_COLS[table]].isna().any().any():
        raise DataValidationError(table, "contains missing values")

def _require_unique(df: pd.DataFrame, table: str, keys) -> None:
    dupes = df.duplicated(subset=list(keys))
    if dupes.any():
        raise DataValidationError(table, f"{int(dupes.sum())} duplicate row(s) on {list(keys)}")

def check_experiment_info(experiment_info: pd.DataFrame) -> None:
    table = "experiment_info"
    _require_columns(experiment_info, table)
    _require_unique(experiment_info, table, ["experiment_id", "variation"])
    if experiment_info["is_control"].dtype != bool:
        raise DataValidationError(table, "is_control must be boolean")
    controls = experiment_info.groupby("experiment_id")["is_control"].sum()
    bad = controls[controls != 1].index.tolist()
    if bad:
        raise DataValidationError(table, f"experiments without exactly one control: {bad}")

def check_attribution_windows(attribution_windows: pd.DataFrame, experiment_info: pd.DataFrame) -> None:
    table = "attribution_windows"
    _require_columns(attribution_windows, table)
    _require_unique(attribution_windows, table, ["experiment_id", "metric_id"])

    windows = pd.to_numeric(attribution_windows["attribution_window"], errors="coerce")
    if windows.isna().any() or (windows <= 0).any() or (windows != windows.round()).any():
        raise DataValidationError(table, "attribution_window must be a positive integer")

    known = set(experiment_info["experiment_id"])
    tracked = set(attribution_windows["experiment_id"])
    if tracked - known:
        raise DataValidationError(table, f"unknown experiments: {sorted(tracked - known)}")
    if known - tracked:
        raise DataValidationError(table, f"experiments without attribution windows: {sorted(known - tracked)}")

    metric_sets = attribution_windows.groupby("experiment_id")["metric_id"].apply(lambda s: tuple(sorted(s)))
    if metric_sets.nunique() > 1:
        raise DataValidationError(table, "experiments do not all track the same metrics")

def check_website_traffic(website_traffic: pd.DataFrame) -> None:
    table = "website_traffic"
    _require_columns(website_traffic, table)
    _require_unique(website_traffic, table, REQUIRED_COLS[table])
    if not pd.api.types.is_datetime64_any_dtype(website_traffic["visit_date"]):
        raise DataValidationError(table, "visit_date must be a timestamp")

def check_experiment_traffic(
    experiment_traffic: pd.DataFrame,
    experiment_info: pd.DataFrame,
    website_traffic: pd.DataFrame,
    windows: Optional[Dict[str, Tuple[pd.Timestamp, pd.Timestamp]]] = None,
) -> None:
    """
    windows maps experiment_id -> (start, end); when given, every enrollment
    must fall inside its experiment's date range.
    """
    table = "experiment_traffic"
    _require_columns(experiment_traffic, table)
    _require_unique(experiment_traffic, table, ["user_id", "experiment_id"])

    arms = experiment_traffic[["experiment_id", "variation"]].drop_duplicates()
    unknown = arms.merge(experiment_info, on=["experiment_id", "variation"], how="left", indicator=True)
    unknown = unknown[unknown["_merge"] == "left_only"]
    if not unknown.empty:
        raise DataValidationError(table, f"unknown experiment/variation pairs: {unknown[['experiment_id', 'variation']].values.tolist()}")

    # Each enrollment must be an actual visit
    visits = experiment_traffic.merge(
        website_traffic.rename(columns={"visit_date": "first_joined_experiment"}),
        on=["user_id", "first_joined_experiment", "path"],
        how="left",
        indicator=True,
    )
    orphans = visits[visits["_merge"] == "left_only"]
    if not orphans.empty:
        raise DataValidationError(table, f"{orphans['user_id'].nunique()} enrolled user(s) have no matching website visit")

    for experiment_id, (start, end) in (windows or {}).items():
        joined = experiment_traffic.loc[experiment_traffic["experiment_id"] == experiment_id, "first_joined_experiment"]
        if ((joined < start) | (joined > end)).any():
            raise DataValidationError(table, f"enrollment outside [{start}, {end}] for {experiment_id!r}")

def check_conversion_events(
    conversion_events: pd.DataFrame,
    attribution_windows: pd.DataFrame,
    website_traffic: pd.DataFrame,
) -> None:
    table = "conversion_events"
    _require_columns(conversion_events, table)
    _require_unique(conversion_events, table, ["user_id", "metric_id"])

    unknown = set(conversion_events["metric_id"]) - set(attribution_windows["metric_id"])
    if unknown:
        raise DataValidationError(table, f"unknown metrics: {sorted(unknown)}")

    first_visit = website_traffic.groupby("user_id")["visit_date"].min()
    anchors = first_visit.reindex(conversion_events["user_id"]).to_numpy()
    if pd.isna(anchors).any():
        raise DataValidationError(table, "converted user(s) missing from website_traffic")
    dates = conversion_events["conversion_date"].to_numpy()
    if (dates < anchors).any():
        raise DataValidationError(table, "conversion before the user's first visit")
    if (dates > website_traffic["visit_date"].max().to_datetime64()).any():
        raise DataValidationError(table, "conversion after the last website visit")
