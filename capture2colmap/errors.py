"""
Exception types raised by capture2colmap.

Every error derives from CaptureError so callers can catch the whole family.
Configuration and conversion errors also derive from ValueError, and dataset
write failures from OSError, so existing handlers for those keep working.
"""


class CaptureError(Exception):
    """Base class for all capture2colmap errors."""


class ConfigurationError(CaptureError, ValueError):
    """Invalid count, radius, threshold, keyframe set or other setting."""


class ConversionError(CaptureError, ValueError):
    """Non-finite values or a zero-norm quaternion reached a conversion."""


class FormatError(CaptureError):
    """A written file failed its post-write layout check."""


class DatasetIOError(CaptureError, OSError):
    """Writing part of a dataset failed (disk full, permission denied, ...)."""


class CancelledError(CaptureError):
    """A long-running write or analysis was cancelled by the caller."""
