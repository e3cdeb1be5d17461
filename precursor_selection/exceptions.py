"""Exception types shared across the scheduling pipeline."""


class ConfigurationError(ValueError):
    """Invalid scheduling input or parameters.

    Raised at build time for mismatched input sizes, an empty charge set,
    non-positive capacities and similar problems. Never silently corrected.
    """


class SolverError(RuntimeError):
    """The ILP backend failed (crash, resource exhaustion, undefined status)."""
