class ConversionError(Exception):
    """Base class for everything the converter raises on purpose."""


class ValidationError(ConversionError, ValueError):
    """An image that can't take part in the batch (wrong size, duplicate name).

    Only the offending image is skipped, the rest of the batch carries on.
    """


class DecodeError(ValidationError):
    """The source file could not be opened or decoded as an image."""


class FormatError(ConversionError, ValueError):
    """An index buffer that can't be packed (odd width, value outside the palette)."""


class CapacityError(ConversionError, RuntimeError):
    """Assigning the next index would go past the 4-digit limit."""
