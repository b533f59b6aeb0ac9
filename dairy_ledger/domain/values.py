"""
Money helpers for the pure domain layer.

Every amount that enters the ledger passes through ``to_money`` once, at
the boundary: strings, ints, floats and Decimals from forms become a
two-place ``Decimal``.  Floats go through ``str()`` so ``0.1`` stays
``Decimal("0.10")``.  NaN and infinities are rejected here and mapped to
typed errors by the caller.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


class NonFiniteAmount(ValueError):
    """Raised by ``to_money`` for NaN / infinite / unparseable input."""


def to_money(value: object) -> Decimal:
    """
    Convert ``value`` to a two-decimal ``Decimal``.

    Raises:
        NonFiniteAmount: if ``value`` is None, not numeric, NaN or infinite.
    """
    if value is None or isinstance(value, bool):
        raise NonFiniteAmount(f"not a number: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise NonFiniteAmount(f"not a number: {value!r}") from exc
    if not amount.is_finite():
        raise NonFiniteAmount(f"not finite: {value!r}")
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def money_sum(values) -> Decimal:
    """Sum amounts (None counts as zero) into a two-decimal Decimal."""
    total = ZERO
    for value in values:
        if value is not None:
            total += to_money(value)
    return total
