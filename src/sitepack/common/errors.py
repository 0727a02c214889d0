"""
Error taxonomy for the export core.

- InputInvalid: malformed geometry or manifest values. Feature-level
  occurrences are recovered by skipping the feature.
- FormatInvariantViolation: an encoder's own invariant failed. Fatal to
  that encoder's output.
- AssemblyIntegrityFailure: the final archive failed its self-check.
  Fatal to the whole job.
"""


class SitePackError(Exception):
    """Base class for all export core errors."""


class InputInvalid(SitePackError, ValueError):
    """Malformed input geometry, grid or manifest."""


class FormatInvariantViolation(SitePackError, RuntimeError):
    """An encoder produced output that breaks its own format invariant."""


class AssemblyIntegrityFailure(SitePackError, RuntimeError):
    """The assembled archive failed its self-check."""
