"""
errors.py — Error taxonomy shared by the store, scorer and simulator.

Running out of free devices while probing is not an error: callers get
``None`` back and count it as a blocked attempt.
"""


class SimGuardError(Exception):
    """Base class for all SimGuard errors."""


class ValidationError(SimGuardError):
    """A referenced device or location does not exist. Aborts one operation."""


class ConfigurationError(SimGuardError):
    """A named rule set could not be loaded or evaluated."""


class StateInconsistency(SimGuardError):
    """The driver referenced a device it never registered. Halts the run."""
