from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class FeeSplit:
    price_minor: int
    marketplace_fee_minor: int
    seller_amount_minor: int

    @property
    def is_payable(self) -> bool:
        # seller must receive something and the fee can't exceed the charge
        return self.seller_amount_minor > 0


def price_to_minor_units(price: Decimal | int | str) -> int:
    """Convert a currency-unit price (e.g. Decimal("15000.00")) to minor units, half-up."""
    cents = (Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def _round_half_up_div(numerator: int, denominator: int) -> int:
    return (numerator * 2 + denominator) // (denominator * 2)


def compute_fee_split(price_minor: int, *, fee_bps: int = 100, minimum_fee_minor: int = 50) -> FeeSplit:
    """
    Marketplace fee is fee_bps of the price (half-up), raised to minimum_fee_minor
    to satisfy the processor's minimum application fee. Integer math only.
    """
    if price_minor <= 0:
        raise ValueError("price_minor must be positive")

    fee = max(_round_half_up_div(price_minor * fee_bps, BPS_DENOMINATOR), minimum_fee_minor)
    return FeeSplit(
        price_minor=price_minor,
        marketplace_fee_minor=fee,
        seller_amount_minor=price_minor - fee,
    )


def verify_fee_split(
    *,
    price_minor: int,
    marketplace_fee_minor: int,
    seller_amount_minor: int,
    fee_bps: int,
    minimum_fee_minor: int,
) -> list[str]:
    """Return a list of mismatch descriptions (empty when the amounts reconcile)."""
    problems: list[str] = []
    if marketplace_fee_minor + seller_amount_minor != price_minor:
        problems.append(
            f"fee {marketplace_fee_minor} + seller amount {seller_amount_minor} != price {price_minor}"
        )
    expected = compute_fee_split(price_minor, fee_bps=fee_bps, minimum_fee_minor=minimum_fee_minor)
    if expected.marketplace_fee_minor != marketplace_fee_minor:
        problems.append(
            f"fee {marketplace_fee_minor} != expected {expected.marketplace_fee_minor}"
        )
    return problems
