"""Allocation service for splitting a site budget into per-unit monthly dues.

Supports distribution methods:
- COEFFICIENT: weight each unit by its unit type coefficient
- SHARE_RATIO: weight each unit by its ownership share
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable

from dues_engine.models.site import DistributionMethod
from dues_engine.models.unit import Unit
from dues_engine.services.errors import ValidationError

MONTHS_PER_YEAR = 12


class AllocationService:
    """Budget distribution engine."""

    def distribute_with_remainder(
        self,
        total_amount: Decimal,
        shares: Dict[int, Decimal],
    ) -> Dict[int, Decimal]:
        """Distribute amount by shares, settling rounding cents on the largest shares.

        Ensures: sum(result) == total_amount (zero money loss/creation)

        Algorithm:
        1. Calculate per-weight amount: total / sum(shares)
        2. Allocate: per_weight * share, rounded half up to cents
        3. Calculate the rounding difference against the total
        4. Sort holders by share descending (ties by id)
        5. Add (or take back) one cent per holder until the difference is gone

        Args:
            total_amount: Total to distribute (Decimal)
            shares: Dict mapping unit_id to share weight (Decimal)

        Returns:
            Dict mapping unit_id to allocated amount (Decimal)
        """
        if not shares:
            return {}

        total = Decimal(str(total_amount))
        share_dict = {k: Decimal(str(v)) for k, v in shares.items()}

        total_shares = sum(share_dict.values())
        if total_shares == 0:
            return {k: Decimal("0.00") for k in share_dict.keys()}

        per_weight = total / total_shares

        allocations = {}
        allocated_total = Decimal(0)
        for unit_id, weight in share_dict.items():
            allocated = (per_weight * weight).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            allocations[unit_id] = allocated
            allocated_total += allocated

        remainder_cents = int(((total - allocated_total) * 100).to_integral_value())
        if remainder_cents:
            step = Decimal("0.01") if remainder_cents > 0 else Decimal("-0.01")
            ordered = sorted(
                (unit_id for unit_id, weight in share_dict.items() if weight > 0),
                key=lambda unit_id: (-share_dict[unit_id], unit_id),
            )
            for i in range(abs(remainder_cents)):
                unit_id = ordered[i % len(ordered)]
                allocations[unit_id] += step

        return allocations

    def unit_weights(
        self,
        units: Iterable[Unit],
        method: DistributionMethod | str,
    ) -> Dict[int, Decimal]:
        """Map unit ids to the weight selected by the distribution method.

        Raises:
            ValidationError: If the method is unknown or a weight is negative
        """
        try:
            method = DistributionMethod(method)
        except ValueError as e:
            raise ValidationError(f"Unknown distribution method: {method}") from e

        weights = {}
        for unit in units:
            if method == DistributionMethod.COEFFICIENT:
                weight = unit.coefficient if unit.coefficient is not None else Decimal("1")
            else:
                weight = unit.share_ratio if unit.share_ratio is not None else Decimal("0")
            weight = Decimal(str(weight))
            if weight < 0:
                raise ValidationError(f"Unit {unit.label} has a negative {method.value} weight")
            weights[unit.id] = weight
        return weights

    def monthly_amounts(
        self,
        total_budget: Decimal,
        units: Iterable[Unit],
        method: DistributionMethod | str,
    ) -> Dict[int, Decimal]:
        """Split a yearly budget into each unit's monthly due.

        Monthly budget = total_budget / 12, rounded to cents, then distributed
        by weight so the units' amounts add up to the monthly budget exactly.
        """
        monthly_budget = (Decimal(str(total_budget)) / MONTHS_PER_YEAR).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        return self.distribute_with_remainder(monthly_budget, self.unit_weights(units, method))


__all__ = ["AllocationService", "MONTHS_PER_YEAR"]
