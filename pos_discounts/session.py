import logging
from datetime import datetime
from typing import Callable, List, Optional

from .config import Settings, get_settings
from .logic import (
    apply_code,
    applicable_rules,
    build_line,
    choose_best,
    compute_totals,
    evaluate,
    manual_discount,
    round2,
)
from .models import AppliedDiscount, BillTotals, CartLine, DiscountRule, EvaluationResult, RuleEvaluation

logger = logging.getLogger(__name__)

Listener = Callable[[Optional[AppliedDiscount]], None]


class BillingSession:
    """
    One register's cart plus the discount currently applied to it.

    Every cart or rule-set change goes through a method here, and each of them
    ends in `recompute()`, so the applied discount always reflects the current
    cart and the current rules. Callers never touch `lines` directly.
    """

    def __init__(self, rules: Optional[List[DiscountRule]] = None,
                 settings: Optional[Settings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        settings = settings or get_settings()
        self.auto_apply = settings.auto_apply
        self.max_combo_size = settings.max_combo_size
        self.vat_enabled = settings.vat_enabled
        self.vat_percent = settings.vat_percent
        self.currency = settings.currency

        self.lines: List[CartLine] = []
        self.rules: List[DiscountRule] = list(rules or [])
        self.applied: Optional[AppliedDiscount] = None
        self._clock = clock
        self._listeners: List[Listener] = []

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock is not None else None

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _publish(self, applied: Optional[AppliedDiscount]) -> None:
        self.applied = applied
        for listener in self._listeners:
            listener(applied)

    # ---------------------------
    # Cart mutations
    # ---------------------------

    def add_line(self, productRef: str, name: str, quantity: float, unitPrice: float,
                 taxPercent: float = 0, sku: Optional[str] = None) -> CartLine:
        """Add a product; scanning the same product again bumps its quantity."""
        for index, line in enumerate(self.lines):
            if line.productRef == productRef:
                return self.set_quantity(index, line.quantity + quantity)

        line = build_line(productRef, name, quantity, unitPrice, taxPercent, sku)
        self.lines.append(line)
        self.recompute()
        return line

    def remove_line(self, index: int) -> None:
        del self.lines[index]
        self.recompute()

    def set_quantity(self, index: int, quantity: float) -> CartLine:
        line = self.lines[index]
        updated = line.model_copy(update={
            "quantity": quantity,
            "lineTotal": round2(line.unitPrice * quantity),
        })
        self.lines[index] = updated
        self.recompute()
        return updated

    def set_price(self, index: int, unitPrice: float) -> CartLine:
        line = self.lines[index]
        updated = line.model_copy(update={
            "unitPrice": unitPrice,
            "lineTotal": round2(unitPrice * line.quantity),
        })
        self.lines[index] = updated
        self.recompute()
        return updated

    def set_rules(self, rules: List[DiscountRule]) -> None:
        self.rules = list(rules)
        self.recompute()

    # ---------------------------
    # Discounts
    # ---------------------------

    def recompute(self) -> Optional[AppliedDiscount]:
        if not self.auto_apply:
            return self.applied
        best = choose_best(self.rules, self.lines, self._now(), self.max_combo_size)
        self._publish(best)
        return best

    def apply_code(self, code: str) -> EvaluationResult:
        result = apply_code(code, self.rules, self.lines, self._now())
        if result.valid:
            logger.info("Coupon %s applied, saves %s %.2f", code.strip().upper(), self.currency, result.appliedAmount)
            self._publish(manual_discount(result))
        elif result.rule is not None:
            logger.info("Coupon %s rejected: %s", code.strip().upper(), result.reason.value)
            self._publish(None)
        return result

    def apply_rule(self, rule: DiscountRule) -> EvaluationResult:
        """Apply a promotion picked from the list, exactly like typing its code."""
        result = evaluate(rule, self.lines, self._now()).model_copy(update={"rule": rule})
        if result.valid:
            self._publish(manual_discount(result))
        return result

    def applicable(self) -> List[RuleEvaluation]:
        return applicable_rules(self.rules, self.lines, self._now())

    def totals(self) -> BillTotals:
        return compute_totals(self.lines, self.applied, self.vat_percent, self.vat_enabled)

    def reset(self) -> None:
        self.lines = []
        self._publish(None)

    def finalize(self) -> BillTotals:
        """Close the sale: report its totals, then start an empty cart."""
        totals = self.totals()
        logger.info("Sale finalized: %s %.2f (discount %.2f)", self.currency, totals.grandTotal, totals.discount)
        self.reset()
        return totals
