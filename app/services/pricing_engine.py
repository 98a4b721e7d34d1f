"""
Service Charge Pricing Engine

Computes a landlord's monthly platform service charge under one of three
billing models:

- percentage:      rent_collected x percentage_rate / 100
- fixed_per_unit:  unit_count x fixed_amount_per_unit
- tiered:          unit_count x price_per_unit of the first tier whose
                   [min_units, max_units] range contains unit_count

Pure functions only; no database access. Intermediate products are kept
exact and the final amount is rounded once with banker's rounding.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, List, Dict

from app.core.enum_utils import parse_enum
from app.core.exceptions import BillingConfigurationError
from app.core.money import ZERO, to_decimal, round_money, format_money
from app.models.billing import BillingModel

logger = logging.getLogger(__name__)


@dataclass
class PricingInputs:
    """Plan parameters plus the landlord's usage for one billing period."""
    rent_collected: Decimal = ZERO
    unit_count: int = 0
    percentage_rate: Optional[Decimal] = None
    fixed_amount_per_unit: Optional[Decimal] = None
    tier_pricing: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_plan(cls, plan, rent_collected: Decimal, unit_count: int) -> "PricingInputs":
        return cls(
            rent_collected=to_decimal(rent_collected),
            unit_count=unit_count,
            percentage_rate=to_decimal(plan.percentage_rate, default=None),
            fixed_amount_per_unit=to_decimal(plan.fixed_amount_per_unit, default=None),
            tier_pricing=list(plan.tier_pricing or []),
        )


def resolve_billing_model(model: Any) -> BillingModel:
    """Parse a billing model name, raising BillingConfigurationError when unknown."""
    resolved = parse_enum(BillingModel, model)
    if resolved is None:
        raise BillingConfigurationError(f"Unknown billing model: {model!r}")
    return resolved


def find_applicable_tier(tiers: List[Dict[str, Any]], unit_count: int) -> Optional[Dict[str, Any]]:
    """
    First tier whose range contains unit_count.

    A missing min_units counts as 0 and a null max_units is unbounded.
    """
    for tier in tiers or []:
        min_units = tier.get("min_units") or 0
        max_units = tier.get("max_units")
        if unit_count >= min_units and (max_units is None or unit_count <= max_units):
            return tier
    return None


def exact_service_charge(model: Any, inputs: PricingInputs) -> Decimal:
    """
    Unrounded service charge for one landlord and one period.

    Invoice generation adds SMS charges to this value before rounding the
    total, so nothing is rounded here.

    Raises:
        BillingConfigurationError: model is not a known billing model
    """
    billing_model = resolve_billing_model(model)
    charge = ZERO

    if billing_model == BillingModel.PERCENTAGE:
        if inputs.percentage_rate:
            charge = to_decimal(inputs.rent_collected) * inputs.percentage_rate / Decimal("100")

    elif billing_model == BillingModel.FIXED_PER_UNIT:
        if inputs.fixed_amount_per_unit:
            charge = Decimal(inputs.unit_count) * inputs.fixed_amount_per_unit

    elif billing_model == BillingModel.TIERED:
        tier = find_applicable_tier(inputs.tier_pricing, inputs.unit_count)
        if tier is None:
            logger.warning(
                f"No pricing tier covers {inputs.unit_count} units; service charge is 0"
            )
        else:
            price = to_decimal(tier.get("price_per_unit"))
            charge = Decimal(inputs.unit_count) * price

    if charge < ZERO:
        charge = ZERO
    return charge


def compute_service_charge(model: Any, inputs: PricingInputs) -> Decimal:
    """Service charge rounded to the currency minor unit."""
    return round_money(exact_service_charge(model, inputs))


def describe_service_charge(model: Any, inputs: PricingInputs, currency: str = "KES") -> str:
    """Human-readable explanation of how the service charge was derived."""
    billing_model = resolve_billing_model(model)
    amount = compute_service_charge(billing_model, inputs)

    if billing_model == BillingModel.PERCENTAGE:
        rate = inputs.percentage_rate or ZERO
        return (
            f"{rate.normalize():f}% of {format_money(inputs.rent_collected, currency)} "
            f"rent collected = {format_money(amount, currency)}"
        )

    if billing_model == BillingModel.FIXED_PER_UNIT:
        per_unit = inputs.fixed_amount_per_unit or ZERO
        return (
            f"{inputs.unit_count} units x {format_money(per_unit, currency)} per unit "
            f"= {format_money(amount, currency)}"
        )

    tier = find_applicable_tier(inputs.tier_pricing, inputs.unit_count)
    if tier is None:
        return f"No pricing tier covers {inputs.unit_count} units"
    max_units = tier.get("max_units")
    tier_range = f"{tier.get('min_units') or 0}+" if max_units is None else f"{tier.get('min_units') or 0}-{max_units}"
    return (
        f"{inputs.unit_count} units x {format_money(tier.get('price_per_unit'), currency)} per unit "
        f"(tier {tier_range} units) = {format_money(amount, currency)}"
    )
