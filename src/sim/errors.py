class SimulationError(Exception):
    """Base class for every failure raised by the simulation pipeline."""


class ConfigurationError(SimulationError, ValueError):
    """Malformed experiment, metric or traffic definitions."""


class InvariantViolation(SimulationError, RuntimeError):
    """A pipeline stage produced output that breaks one of its guarantees."""


class DataValidationError(SimulationError, ValueError):
    def __init__(self, table: str, rule: str):
        self.table = table
        self.rule = rule
        super().__init__(f"{table}: {rule}")
