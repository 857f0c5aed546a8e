class TapenetError(Exception):
    """Base class for every error raised by tapenet."""


class ConfigurationError(TapenetError, ValueError):
    """
    A layer or schedule option is invalid.
    Raised before any training work starts; values are never clamped.
    """


class ShapeError(TapenetError, ValueError):
    """
    A tensor does not have the shape the receiving layer or operation expects.
    """
