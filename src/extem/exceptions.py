from __future__ import annotations


class ExtemError(Exception):
    """Base class for every error raised by extem."""


class InvalidArgumentError(ExtemError, ValueError):
    """Bad cluster count, malformed row, or a vector that cannot be normalized."""


class NumericalFailure(ExtemError, ArithmeticError):
    """An E/M iteration broke down numerically (overflow, NaN, zero-sum posterior)."""


class IndexOutOfRangeError(ExtemError, IndexError):
    pass


class NotFittedError(ExtemError, RuntimeError):
    pass
