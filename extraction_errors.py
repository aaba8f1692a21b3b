"""
Exception types raised by the region sprite extraction pipeline.
"""


class SpriteExtractionError(ValueError):
    """Base class for all extraction failures surfaced to the caller."""


class InvalidBounds(SpriteExtractionError):
    """Percentage bounds fail the range or sum checks."""


class OutOfImageBounds(SpriteExtractionError):
    """Converted or grip-adjusted pixel bounds fall outside the image."""


class ImageDecodeFailure(SpriteExtractionError):
    """The encoded source image could not be decoded."""


class ContourDegenerate(SpriteExtractionError):
    """
    Fewer than 3 usable contour points after all tracing strategies.

    The pipeline never raises this; it is recorded in the diagnostics and the
    mask builder falls back to a fully opaque mask.
    """


class RegionExtractionFailure(SpriteExtractionError):
    """A pixel buffer read or write fell outside the source image."""


class ExtractionCancelled(SpriteExtractionError):
    """The caller set the cancellation event while the pipeline was running."""


def check_cancelled(cancel_event, stage: str):
    """Raise ExtractionCancelled if the optional event has been set."""
    if cancel_event is not None and cancel_event.is_set():
        raise ExtractionCancelled(f"Extraction cancelled during {stage}")
