"""
Optimiser Errors
================

Every failure the optimisers raise on purpose derives from ``OptimiserError``.

    OptimiserError
    ├── InvalidHyperparameter   (also a ValueError)   -- construction time
    ├── UnsupportedOperation    (also NotImplementedError)
    └── ParameterError          -- one parameter failed during step()
        ├── ShapeMismatch
        └── NonFiniteGradient
"""


class OptimiserError(Exception):
    """Base class for all optimiser errors."""


class InvalidHyperparameter(OptimiserError, ValueError):
    """A hyperparameter is outside its valid range."""

    def __init__(self, name: str, value, reason: str | None = None):
        self.name = name
        self.value = value
        message = f"Invalid {name}: {value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class UnsupportedOperation(OptimiserError, NotImplementedError):
    """The tensor representation or call pattern is not supported."""


class ParameterError(OptimiserError):
    """Updating a single parameter failed; its value and state are untouched.

    Args:
        index: Position of the parameter in param-group order.
    """

    def __init__(self, index: int, message: str):
        self.index = index
        super().__init__(f"parameter {index}: {message}")


class ShapeMismatch(ParameterError):
    """Gradient shape differs from its parameter's shape."""

    def __init__(self, index: int, expected, actual):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(
            index, f"gradient shape {self.actual} does not match parameter shape {self.expected}"
        )


class NonFiniteGradient(ParameterError):
    """Gradient contains NaN or Inf (only raised with ``check_finite=True``)."""

    def __init__(self, index: int):
        super().__init__(index, "gradient contains non-finite values")
