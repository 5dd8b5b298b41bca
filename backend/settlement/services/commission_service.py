# Overview: Pure commission math; transaction facts -> commission, badge discount, invoice.

"""
Commission Calculator

WHY: The platform fee is the only money the intermediary keeps. It must be
deterministic, auditable and identical wherever it is computed (invoice
preview, payment creation, receipts).

RULES:
- Rate is selected strictly by transaction type, never blended:
    rental_long    50% of one month's rent
    rental_short   10% of the total stay price
    land_sale       1% of the sale price
    property_sale   2% of the sale price (house, apartment, villa)
- Loyalty discount applies multiplicatively to commission_base:
    bronze 0%, silver 5%, gold 10%, diamond 15%
- Rounding: ROUND_HALF_UP to the smallest currency unit, applied to
  commission_base and to commission_final.
- The commission line on every invoice is flagged non_refundable.

No database access, no side effects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from ..errors import InvalidTransactionType, ValidationError


# =============================================================================
# TRANSACTION TYPES / RATES (CONSTANTS)
# =============================================================================

RENTAL_LONG = "rental_long"
RENTAL_SHORT = "rental_short"
LAND_SALE = "land_sale"
PROPERTY_SALE = "property_sale"

COMMISSION_RATES = {
    RENTAL_LONG: Decimal("0.50"),
    RENTAL_SHORT: Decimal("0.10"),
    LAND_SALE: Decimal("0.01"),
    PROPERTY_SALE: Decimal("0.02"),
}

PRINCIPAL_LABELS = {
    RENTAL_LONG: "Monthly rent",
    RENTAL_SHORT: "Stay price",
    LAND_SALE: "Sale price",
    PROPERTY_SALE: "Sale price",
}


# =============================================================================
# LOYALTY TIERS (CONSTANTS)
# =============================================================================

TIER_BRONZE = "bronze"
TIER_SILVER = "silver"
TIER_GOLD = "gold"
TIER_DIAMOND = "diamond"

TIER_DISCOUNTS = {
    TIER_BRONZE: Decimal("0"),
    TIER_SILVER: Decimal("0.05"),
    TIER_GOLD: Decimal("0.10"),
    TIER_DIAMOND: Decimal("0.15"),
}


@dataclass(frozen=True)
class CommissionQuote:
    commission_base: int
    discount_rate: Decimal
    discount_amount: int
    commission_final: int
    rate_used: Decimal

    def to_dict(self) -> dict:
        return {
            "commission_base": self.commission_base,
            "discount_rate": str(self.discount_rate),
            "discount_amount": self.discount_amount,
            "commission_final": self.commission_final,
            "rate_used": str(self.rate_used),
        }


@dataclass(frozen=True)
class ContractFacts:
    """What pricing needs to know about a contract and its payer."""
    transaction_type: str
    base_amount: int
    deposit_amount: int = 0
    loyalty_tier: str = TIER_BRONZE
    contract_reference: str | None = None


@dataclass(frozen=True)
class InvoiceLine:
    code: str
    label: str
    amount: int
    refundable: bool
    non_refundable: bool = False

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "label": self.label,
            "amount": self.amount,
            "refundable": self.refundable,
            "non_refundable": self.non_refundable,
        }


@dataclass(frozen=True)
class Invoice:
    contract_reference: str | None
    transaction_type: str
    loyalty_tier: str
    lines: tuple[InvoiceLine, ...]
    quote: CommissionQuote
    notes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def principal(self) -> int:
        return self.lines[0].amount

    @property
    def deposit(self) -> int:
        return self.lines[1].amount

    @property
    def commission(self) -> int:
        return self.lines[2].amount

    @property
    def total(self) -> int:
        return sum(line.amount for line in self.lines)

    @property
    def payee_amount(self) -> int:
        """Transferred to the payee after escrow validation (48h max)."""
        return self.principal + self.deposit

    @property
    def platform_amount(self) -> int:
        return self.commission

    def to_dict(self) -> dict:
        return {
            "contract_reference": self.contract_reference,
            "transaction_type": self.transaction_type,
            "loyalty_tier": self.loyalty_tier,
            "lines": [line.to_dict() for line in self.lines],
            "commission": self.quote.to_dict(),
            "total": self.total,
            "payee_amount": self.payee_amount,
            "platform_amount": self.platform_amount,
            "notes": list(self.notes),
        }


# =============================================================================
# CALCULATION
# =============================================================================

def round_half_up(value: Decimal) -> int:
    """Round to the smallest currency unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def commission_rate_for(transaction_type: str) -> Decimal:
    try:
        return COMMISSION_RATES[transaction_type]
    except KeyError:
        raise InvalidTransactionType(
            f"Unknown transaction type: {transaction_type}. Must be one of {sorted(COMMISSION_RATES)}",
            transaction_type=transaction_type,
        ) from None


def discount_rate_for(loyalty_tier: str) -> Decimal:
    try:
        return TIER_DISCOUNTS[loyalty_tier]
    except KeyError:
        raise ValidationError(
            f"Unknown loyalty tier: {loyalty_tier}. Must be one of {sorted(TIER_DISCOUNTS)}",
            loyalty_tier=loyalty_tier,
        ) from None


def calculate_commission(transaction_type: str, base_amount: int, loyalty_tier: str = TIER_BRONZE) -> CommissionQuote:
    """
    Price the platform commission for one transaction.

    Args:
        transaction_type: rental_long, rental_short, land_sale, property_sale
        base_amount: one month's rent, total stay price or sale price
        loyalty_tier: payer's badge (bronze, silver, gold, diamond)

    Raises:
        InvalidTransactionType: unknown transaction type (programmer error)
        ValidationError: unknown tier or negative amount
    """
    rate = commission_rate_for(transaction_type)
    discount_rate = discount_rate_for(loyalty_tier)

    if isinstance(base_amount, bool) or not isinstance(base_amount, int):
        raise ValidationError("Base amount must be an integer number of currency units", base_amount=base_amount)
    if base_amount < 0:
        raise ValidationError("Base amount cannot be negative", base_amount=base_amount)

    commission_base = round_half_up(Decimal(base_amount) * rate)
    commission_final = round_half_up(Decimal(commission_base) * (Decimal("1") - discount_rate))

    return CommissionQuote(
        commission_base=commission_base,
        discount_rate=discount_rate,
        discount_amount=commission_base - commission_final,
        commission_final=commission_final,
        rate_used=rate,
    )


def build_invoice(facts: ContractFacts) -> Invoice:
    """
    Itemized invoice: principal, refundable deposit, non-refundable commission.

    The deposit line is always present (amount 0 when the contract has none),
    so consumers can rely on three lines in a fixed order.
    """
    if facts.deposit_amount < 0:
        raise ValidationError("Deposit amount cannot be negative", deposit_amount=facts.deposit_amount)

    quote = calculate_commission(facts.transaction_type, facts.base_amount, facts.loyalty_tier)

    lines = (
        InvoiceLine(
            code="principal",
            label=PRINCIPAL_LABELS[facts.transaction_type],
            amount=facts.base_amount,
            refundable=True,
        ),
        InvoiceLine(
            code="deposit",
            label="Security deposit",
            amount=facts.deposit_amount,
            refundable=True,
        ),
        InvoiceLine(
            code="commission",
            label="Platform commission",
            amount=quote.commission_final,
            refundable=False,
            non_refundable=True,
        ),
    )

    notes = ("The platform commission is non-refundable.",)
    if quote.discount_amount:
        notes += (f"Loyalty discount ({facts.loyalty_tier}) saved {quote.discount_amount}.",)

    return Invoice(
        contract_reference=facts.contract_reference,
        transaction_type=facts.transaction_type,
        loyalty_tier=facts.loyalty_tier,
        lines=lines,
        quote=quote,
        notes=notes,
    )


def is_commission_refundable() -> bool:
    """Commission is never refundable. Not a policy toggle."""
    return False


def commission_rates_info() -> list[dict]:
    """Rate table for transparency display."""
    return [
        {"transaction_type": RENTAL_LONG, "rate": "50%", "description": "50% of one month's rent, paid once at signature"},
        {"transaction_type": RENTAL_SHORT, "rate": "10%", "description": "10% of the total stay price"},
        {"transaction_type": LAND_SALE, "rate": "1%", "description": "1% of the sale price"},
        {"transaction_type": PROPERTY_SALE, "rate": "2%", "description": "2% of the sale price (house, apartment, villa)"},
    ]
