"""ExchangeQuote and AggregatedRate: price values flowing from exchanges to the ledger.

Prices are BOB per USDT as quoted on P2P markets. All arithmetic uses
``Decimal``; conversion to the ledger's 7-decimal integer representation
(stroops) happens only in :func:`to_stroops`, at the point a value is handed
to a contract call.

.. code-block:: python

    >>> quote = ExchangeQuote("binance", Decimal("9.18"), Decimal("9.15"), 1700000000)
    >>> to_stroops(quote.ask)
    91800000
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

# Number of fractional digits used on-chain (BOBT and oracle prices).
DECIMALS = 7
STROOP = Decimal(1).scaleb(-DECIMALS)

# Sanity band for BOB/USDT quotes; anything outside is discarded.
DEFAULT_PRICE_MIN = Decimal("5")
DEFAULT_PRICE_MAX = Decimal("15")


def to_stroops(value: Decimal) -> int:
    """Round a decimal amount to the ledger's fixed-point integer.

    :param value: Amount or price as Decimal.
    :returns: Integer number of stroops (10^-7 units), rounded half up.
    """
    return int((value / STROOP).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_stroops(value: int) -> Decimal:
    """Convert a ledger fixed-point integer back to a Decimal."""
    return Decimal(value) * STROOP


def quantize_amount(value: Decimal) -> Decimal:
    """Round an amount to stroop precision (7 decimal places)."""
    return value.quantize(STROOP, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ExchangeQuote:
    """A bid/ask observation from one named market.

    :ivar source: Exchange name (e.g., "binance").
    :ivar ask: Price to buy USDT with BOB.
    :ivar bid: Price to sell USDT for BOB.
    :ivar observed_at: Unix timestamp (seconds) reported by the market.
    """

    source: str
    ask: Decimal
    bid: Decimal
    observed_at: int

    @property
    def mid(self) -> Decimal:
        """Midpoint between ask and bid."""
        return (self.ask + self.bid) / 2


def is_sane(
    ask: Decimal,
    bid: Decimal,
    price_min: Decimal = DEFAULT_PRICE_MIN,
    price_max: Decimal = DEFAULT_PRICE_MAX,
) -> bool:
    """Check that ``ask >= bid > 0`` and both sit inside the sanity band.

    .. code-block:: python

        >>> is_sane(Decimal("9.2"), Decimal("9.1"))
        True
        >>> is_sane(Decimal("9.1"), Decimal("9.2"))
        False
    """
    if not ask.is_finite() or not bid.is_finite():
        return False
    if bid <= 0 or ask < bid:
        return False
    return price_min <= bid and ask <= price_max


@dataclass(frozen=True)
class AggregatedRate:
    """Unweighted average of the valid quotes collected in one pass.

    :ivar ask: Mean ask price.
    :ivar bid: Mean bid price.
    :ivar source_count: Number of quotes that contributed.
    :ivar as_of: Latest ``observed_at`` among contributors (not wall clock).
    :ivar sources: Names of the contributing exchanges.
    """

    ask: Decimal
    bid: Decimal
    source_count: int
    as_of: int
    sources: tuple[str, ...] = ()

    @property
    def mid(self) -> Decimal:
        """Midpoint between averaged ask and bid."""
        return (self.ask + self.bid) / 2

    def age(self, now: float) -> float:
        """Seconds elapsed since the freshest contributing observation."""
        return now - self.as_of

    def is_stale(self, now: float, max_age: float) -> bool:
        """Check staleness against a consumer-specific maximum age.

        :param now: Current Unix time in seconds.
        :param max_age: Maximum tolerated age in seconds.
        :returns: True if ``now - as_of > max_age``.
        """
        return self.age(now) > max_age
