"""Reward-token amount conversion.

All payout arithmetic runs on integer raw units (the token's smallest unit).
Display values (``Decimal`` with ``decimals`` fractional digits) exist only at
the edges: the configured storage convention for entitlement rows, API
responses, and client-supplied hints. ``AmountPolicy`` is the single place
where one is turned into the other.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum

LAMPORTS_PER_SOL = 1_000_000_000


class AmountUnit(str, Enum):
    """Unit convention used for stored entitlement amounts."""

    RAW = "raw"
    DISPLAY = "display"


def to_raw(display: Decimal | int | str, decimals: int) -> int:
    """Convert a display amount to raw units, truncating sub-unit dust.

    Args:
        display: Amount in display units.
        decimals: Token decimal count.

    Returns:
        Integer amount in the smallest unit.

    Raises:
        ValueError: If the amount is not a finite number.
    """
    try:
        value = Decimal(str(display))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {display!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {display!r}")
    scaled = (value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def to_display(raw: int, decimals: int) -> Decimal:
    """Convert raw units to an exact display ``Decimal``."""
    return Decimal(raw).scaleb(-decimals)


def format_display(raw: int, decimals: int) -> str:
    """Render raw units as a plain decimal string without trailing zeros."""
    text = format(to_display(raw, decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


@dataclass(frozen=True)
class AmountPolicy:
    """Reward-token numeric policy shared by every component.

    Attributes:
        decimals: Reward token decimal count.
        unit: Unit in which entitlement amounts are persisted.
        reserve_fraction: Share of the acquired reward that is allocated
            to holders; the remainder stays in the treasury as reserve.
    """

    decimals: int = 6
    unit: AmountUnit = AmountUnit.DISPLAY
    reserve_fraction: Decimal = Decimal("0.95")

    def __post_init__(self) -> None:
        if not 0 <= self.decimals <= 18:
            raise ValueError("decimals must be between 0 and 18")
        if not Decimal(0) < self.reserve_fraction <= Decimal(1):
            raise ValueError("reserve_fraction must be in (0, 1]")

    def stored_to_raw(self, stored: Decimal | int) -> int:
        """Convert a persisted entitlement amount to raw units."""
        if self.unit is AmountUnit.RAW:
            return int(Decimal(stored).to_integral_value(rounding=ROUND_DOWN))
        return to_raw(stored, self.decimals)

    def raw_to_stored(self, raw: int) -> Decimal:
        """Convert raw units to the persisted entitlement representation."""
        if self.unit is AmountUnit.RAW:
            return Decimal(raw)
        return to_display(raw, self.decimals)

    def display(self, raw: int) -> Decimal:
        return to_display(raw, self.decimals)

    def parse_display(self, value: Decimal | int | str) -> int:
        return to_raw(value, self.decimals)

    def allocate(self, acquired_raw: int) -> int:
        """Apply the reserve fraction to an acquired amount (floor)."""
        if acquired_raw <= 0:
            return 0
        allocated = (Decimal(acquired_raw) * self.reserve_fraction).to_integral_value(rounding=ROUND_DOWN)
        return int(allocated)


def pro_rata_shares(allocated_raw: int, balances: dict[str, int]) -> dict[str, int]:
    """Split ``allocated_raw`` across wallets proportionally to their balances.

    Each share is ``floor(allocated * balance / total)``; wallets whose share
    rounds to zero are omitted. The sum of shares never exceeds the
    allocation.
    """
    total = sum(b for b in balances.values() if b > 0)
    if allocated_raw <= 0 or total <= 0:
        return {}
    shares: dict[str, int] = {}
    for wallet, balance in balances.items():
        if balance <= 0:
            continue
        share = allocated_raw * balance // total
        if share > 0:
            shares[wallet] = share
    return shares
