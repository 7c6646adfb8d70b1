# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""DCC validation exceptions.

Semantic failures never raise; they are reported as results. The classes
here cover codec failures (converted to technical results by the decode
stage), caller input errors, and fatal environmental faults.
"""


class DccError(Exception):
    """Base exception for DCC validation errors."""
    pass


class CodecError(DccError):
    """A codec collaborator could not decode its input."""

    def __init__(self, step: str, message: str):
        self.step = step
        self.message = message
        super().__init__(f"{step}: {message}")


class HashCalculationError(DccError):
    """The configured hash primitive is unavailable."""

    @classmethod
    def unsupported(cls, algorithm: str) -> "HashCalculationError":
        return cls(f"hash calculation: unsupported algorithm {algorithm!r}")


class InvalidAcceptableTypeError(DccError, ValueError):
    """An acceptable-type symbol in the conditions is not recognized."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"unknown acceptable cert type symbol: {symbol!r}")


class InvalidConditionsError(DccError, ValueError):
    """A required condition field is missing or cannot be parsed."""

    @classmethod
    def missing(cls, field: str) -> "InvalidConditionsError":
        return cls(f"condition '{field}' is required")

    @classmethod
    def unparseable(cls, field: str, value: str) -> "InvalidConditionsError":
        return cls(f"condition '{field}' is not a zoned ISO-8601 timestamp: {value!r}")


class GatewayFetchError(DccError):
    """A gateway download failed or returned unusable content."""
    pass
