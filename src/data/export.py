import logging
from pathlib import Path

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
TABLES = ["experiment_info", "attribution_windows", "website_traffic", "experiment_traffic", "conversion_events"]


def write_tables(result, out_dir) -> list:
    """
    Write the published tables of a validated SimulationResult as CSV.
    Returns the written paths in TABLES order.
    """
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    written = []
    for name in TABLES:
        df = getattr(result, name)
        path = out / f"{name}.csv"
        df.to_csv(path, index=False, date_format=TIMESTAMP_FORMAT, lineterminator="\n")
        logger.info("Wrote %s (%d rows)", path, len(df))
        written.append(path)
    return written
