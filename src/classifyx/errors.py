"""Exception types raised by the classification pipeline."""

from __future__ import annotations


class ClassifyXError(Exception):
    """Base class for all ClassifyX errors."""


class ResourceLoadError(ClassifyXError):
    """A bundled resource is missing, unreadable, or malformed.

    Initialization that fails with this error is not memoized, so the next
    call to ``ensure_loaded()`` tries again.
    """


class DecodeError(ClassifyXError):
    """Image bytes could not be decoded into a raster image."""


class ModelMismatchError(ClassifyXError):
    """Model output does not match what the label set expects."""
