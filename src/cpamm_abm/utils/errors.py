from typing import Optional


class PoolError(Exception):
    """
    Base class for every failure raised by the pool and its collaborators.

    Each subclass carries a default ``reason`` tag. Call sites may pass a more
    specific tag (e.g. ``InvalidAmount("ZERO_INPUT")``), which becomes both the
    exception message and its ``reason`` attribute.
    """

    reason = "POOL_ERROR"

    def __init__(self, reason: Optional[str] = None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class InvalidAmount(PoolError, ValueError):
    """Zero deposit amount or zero swap input."""

    reason = "ZERO_AMOUNT"


class InvalidShareAmount(PoolError, ValueError):
    """Zero shares minted by a deposit or requested on withdrawal."""

    reason = "ZERO_SHARES"


class InvalidAsset(PoolError, ValueError):
    """Swap input token is not one of the pool's two tokens."""

    reason = "INVALID_TOKEN"


class DivisionByZero(PoolError, ZeroDivisionError):
    reason = "DIVISION_BY_ZERO"


class ArithmeticOverflow(PoolError, OverflowError):
    reason = "ARITHMETIC_OVERFLOW"


class ExternalTransferFailure(PoolError):
    """A token refused a transfer (short balance or allowance)."""

    reason = "TRANSFER_FAILED"


class InsufficientShares(PoolError):
    reason = "INSUFFICIENT_SHARES"
