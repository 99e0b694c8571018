"""Error taxonomy for the metrics engine.

Only ConfigurationError is meant to reach callers. The others are raised at
the boundary where they happen and recovered by the component that owns the
recovery (zeroed counters, sanitization, fallback chain profile, discarded
batch staging).
"""


class MetricsError(Exception):
    """Base class for all chainpulse errors."""


class InputDataError(MetricsError):
    """Counters from the upstream source are missing or malformed."""


class DataSourceError(MetricsError):
    """The counter source could not be read (connection, query failure)."""


class ValidationError(MetricsError):
    """A computed snapshot violates a declared numeric rule."""

    def __init__(self, issues: list):
        self.issues = issues
        super().__init__(f"{len(issues)} validation issue(s)")


class NormalizationError(MetricsError):
    """Unknown chain id or unusable chain profile values."""


class SchedulingError(MetricsError):
    """A scheduled batch run failed or was aborted before commit."""


class ConfigurationError(MetricsError):
    """Invalid configuration shape (chain profile table, weights)."""
