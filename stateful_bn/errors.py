"""Exceptions and warnings raised by the batch-norm operators."""


class BatchNormError(Exception):
    """Base class for errors raised by this package."""


class ShapeMismatchError(BatchNormError, ValueError):
    """Input is not [N, H, W, C] or its channel dimension is wrong."""


class InvalidModeError(BatchNormError, ValueError):
    """Ambient execution mode is neither training nor inference."""


class CompilationError(BatchNormError, RuntimeError):
    """A kernel could not be compiled."""


class NumericalInstabilityWarning(RuntimeWarning):
    """A variance came out negative and was clamped to zero."""
