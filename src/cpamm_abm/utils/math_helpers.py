from cpamm_abm.utils.errors import ArithmeticOverflow, DivisionByZero

UINT256_MAX = 2**256 - 1

FEE_NUMERATOR = 3
FEE_DENOMINATOR = 1000


def to_uint(value: int, name: str = "value") -> int:
    """
    Validate that ``value`` is an unsigned 256-bit integer and return it.

    Parameters
    ----------
    value : int
        The candidate amount.
    name : str
        Label used in the error message.

    Returns
    -------
    int
        ``value`` unchanged.

    Raises
    ------
    TypeError
        If ``value`` is not an ``int`` (``bool`` is rejected as well).
    ArithmeticOverflow
        If ``value`` lies outside ``[0, UINT256_MAX]``.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise ArithmeticOverflow()
    return value


def checked_add(x: int, y: int) -> int:
    """Add two uint256 values, raising ArithmeticOverflow past UINT256_MAX."""
    result = x + y
    if result > UINT256_MAX:
        raise ArithmeticOverflow()
    return result


def checked_sub(x: int, y: int) -> int:
    """Subtract two uint256 values, raising ArithmeticOverflow on underflow."""
    if y > x:
        raise ArithmeticOverflow()
    return x - y


def checked_mul(x: int, y: int) -> int:
    """Multiply two uint256 values, raising ArithmeticOverflow past UINT256_MAX."""
    result = x * y
    if result > UINT256_MAX:
        raise ArithmeticOverflow()
    return result


def checked_div(x: int, y: int) -> int:
    """Floor-divide, raising DivisionByZero instead of ZeroDivisionError."""
    if y == 0:
        raise DivisionByZero()
    return x // y


def minimum(x: int, y: int) -> int:
    return x if x < y else y


def isqrt(y: int) -> int:
    """
    Integer square root, ``floor(sqrt(y))``, via the Babylonian method.

    Starting from ``x = y // 2 + 1`` the estimate decreases monotonically
    until it stops improving, at which point it is the exact floor.

    Parameters
    ----------
    y : int
        Unsigned integer radicand.

    Returns
    -------
    int
        The largest ``z`` with ``z * z <= y``.
    """
    if y > 3:
        z = y
        x = y // 2 + 1
        while x < z:
            z = x
            x = (y // x + x) // 2
        return z
    if y != 0:
        return 1
    return 0


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """
    Compute the output amount of a swap using the constant-product formula.

    The 0.3% fee is applied to the input as ``997 / 1000``:
    ``amount_out = (amount_in * 997 * reserve_out) // (reserve_in * 1000 + amount_in * 997)``

    The numerator is formed in full before the single floor division, so the
    result matches the integer formula bit for bit.

    Parameters
    ----------
    amount_in : int
        The input token amount being swapped into the pool.
    reserve_in : int
        The pool's reserve of the input token.
    reserve_out : int
        The pool's reserve of the output token.

    Returns
    -------
    int
        Amount of output token paid out, always strictly below ``reserve_out``
        for positive inputs.

    Raises
    ------
    DivisionByZero
        If ``reserve_in`` is zero.
    ArithmeticOverflow
        If an intermediate product leaves the uint256 range.
    """
    to_uint(amount_in, "amount_in")
    to_uint(reserve_in, "reserve_in")
    to_uint(reserve_out, "reserve_out")
    if reserve_in == 0:
        raise DivisionByZero()

    amount_in_with_fee = checked_mul(amount_in, FEE_DENOMINATOR - FEE_NUMERATOR)
    numerator = checked_mul(amount_in_with_fee, reserve_out)
    denominator = checked_add(checked_mul(reserve_in, FEE_DENOMINATOR), amount_in_with_fee)
    return checked_div(numerator, denominator)
