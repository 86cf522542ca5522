"""Error types raised by validation, conversion and packaging."""


class ConverterError(Exception):
    """Base class for all converter errors."""


class ValidationError(ConverterError):
    """A submitted file was rejected before an item was created."""


class ConversionError(ConverterError):
    """A single item failed to convert.

    ``retryable`` tells the orchestrator whether another attempt can help.
    """

    retryable = True


class DecodeError(ConversionError):
    """Source media is corrupt, unreadable or reports zero dimensions."""

    retryable = False


class RasterTooLargeError(ConversionError):
    retryable = False


class UnsupportedFormatError(ConversionError):
    """No usable output codec is available on this host."""

    retryable = False


class EncodeError(ConversionError):
    """The codec could not produce output."""


class StuckError(ConversionError):
    """Recording was force-stopped on a stalled source and produced nothing."""

    retryable = False


class ConversionTimeoutError(ConversionError):
    """Recording hit its time bound and produced nothing."""

    retryable = False


class ArchiveError(ConverterError):
    """Packaging the archive failed; deliver items individually instead."""
