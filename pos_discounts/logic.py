import logging
import math
import sys
from datetime import datetime, timezone
from itertools import combinations
from typing import List, Optional, Sequence, Tuple

from .models import (
    AppliedDiscount,
    BillTotals,
    CartLine,
    DiscountRule,
    DiscountScope,
    DiscountType,
    EvaluationResult,
    Origin,
    Reason,
    RuleEvaluation,
)

logger = logging.getLogger(__name__)

# Largest combo the optimizer explores. Raising it trades speed for a wider search;
# results are only optimal among combos up to this size.
MAX_COMBO_SIZE = 3


# ---------------------------
# Money helpers
# ---------------------------

def round2(value: float) -> float:
    """Round half-up to 2 decimals, nudged by machine epsilon against float drift."""
    return math.floor((float(value) + sys.float_info.epsilon) * 100 + 0.5) / 100


def build_line(productRef: str, name: str, quantity: float, unitPrice: float,
               taxPercent: float = 0, sku: Optional[str] = None) -> CartLine:
    return CartLine(
        productRef=productRef,
        name=name,
        sku=sku,
        quantity=quantity,
        unitPrice=unitPrice,
        lineTotal=round2(unitPrice * quantity),
        taxPercent=taxPercent,
    )


def compute_subtotal(lines: Sequence[CartLine]) -> float:
    return round2(sum(line.lineTotal for line in lines))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------
# Rule Evaluator
# ---------------------------

def line_matches(rule: DiscountRule, line: CartLine) -> bool:
    match = rule.itemMatch
    if match is None:
        return False

    name = (line.name or "").lower()
    if any(token and token.lower() in name for token in match.tokens):
        return True

    return bool(match.sku and line.sku and match.sku == line.sku)


def _line_reduction(rule: DiscountRule, line: CartLine) -> float:
    if rule.type == DiscountType.PERCENT:
        return line.lineTotal * rule.value / 100
    # flat item discounts count once per matching line entry, regardless of quantity
    return rule.value


def _invalid(reason: Reason) -> EvaluationResult:
    return EvaluationResult(valid=False, appliedAmount=0, reason=reason)


def evaluate(rule: DiscountRule, lines: Sequence[CartLine],
             now: Optional[datetime] = None) -> EvaluationResult:
    """
    Decide whether `rule` applies to the cart and how much it saves.

    Checks run in order and stop at the first failure:
     1. rule is active
     2. minimum order value
     3. validity window (startAt / endAt)
     4. amount: order scope acts on the subtotal, item scope on matching lines
    The lines are only read, never modified.
    """
    if not rule.active:
        return _invalid(Reason.INACTIVE)

    subtotal = compute_subtotal(lines)
    if rule.minOrderValue > 0 and subtotal < rule.minOrderValue:
        return _invalid(Reason.MIN_ORDER_NOT_MET)

    if now is None:
        now = _utcnow()
    if rule.startAt is not None and rule.startAt > now:
        return _invalid(Reason.NOT_STARTED)
    if rule.endAt is not None and rule.endAt < now:
        return _invalid(Reason.EXPIRED)

    if rule.scope == DiscountScope.ORDER:
        if rule.type == DiscountType.PERCENT:
            applied = subtotal * rule.value / 100
        else:
            applied = rule.value
    else:
        applied = sum(_line_reduction(rule, line) for line in lines if line_matches(rule, line))

    if rule.maxValue > 0:
        applied = min(applied, rule.maxValue)

    # discount cannot exceed the cart value and cannot be negative
    applied = round2(max(0.0, min(applied, subtotal)))
    if applied == 0:
        return _invalid(Reason.NO_MATCH)
    return EvaluationResult(valid=True, appliedAmount=applied)


# ---------------------------
# Cart Repricer
# ---------------------------

def _rescaled(line: CartLine, reduction: float) -> CartLine:
    new_total = max(0.0, round2(line.lineTotal - reduction))
    new_price = round2(new_total / line.quantity) if line.quantity > 0 else line.unitPrice
    return line.model_copy(update={"lineTotal": new_total, "unitPrice": new_price})


def reprice(lines: Sequence[CartLine], amount: float) -> List[CartLine]:
    """Spread an order-level discount over every line in proportion to its total."""
    subtotal = sum(line.lineTotal for line in lines)
    if subtotal <= 0:
        return [line.model_copy() for line in lines]

    ratio = amount / subtotal
    return [_rescaled(line, round2(line.lineTotal * ratio)) for line in lines]


def reprice_items(lines: Sequence[CartLine], rule: DiscountRule, amount: float) -> List[CartLine]:
    """Take `amount` off the lines `rule` matches, weighted by each line's own reduction."""
    raw = [_line_reduction(rule, line) if line_matches(rule, line) else 0.0 for line in lines]
    total_raw = sum(raw)
    if total_raw <= 0:
        return [line.model_copy() for line in lines]

    scale = amount / total_raw
    return [
        _rescaled(line, round2(r * scale)) if r > 0 else line.model_copy()
        for line, r in zip(lines, raw)
    ]


# ---------------------------
# Combination Optimizer
# ---------------------------

def score_combo(combo: Sequence[DiscountRule], lines: Sequence[CartLine],
                now: Optional[datetime] = None) -> Optional[float]:
    """
    Total saved by applying `combo` to a private trial cart.
    Returns None when the combo is not allowed (a non-stackable rule with company).
    """
    if len(combo) > 1 and any(not rule.stackable for rule in combo):
        return None

    sequence = [r for r in combo if r.scope == DiscountScope.ITEM]
    sequence += [r for r in combo if r.scope == DiscountScope.ORDER]

    trial = [line.model_copy() for line in lines]
    total = 0.0
    for rule in sequence:
        result = evaluate(rule, trial, now)
        if not result.valid:
            continue

        total += result.appliedAmount
        if rule.scope == DiscountScope.ORDER:
            trial = reprice(trial, result.appliedAmount)
        else:
            trial = reprice_items(trial, rule, result.appliedAmount)

    return round2(total)


def candidate_combos(rules: Sequence[DiscountRule],
                     max_size: int = MAX_COMBO_SIZE) -> List[Tuple[DiscountRule, ...]]:
    combos: List[Tuple[DiscountRule, ...]] = []
    for size in range(1, max_size + 1):
        combos.extend(combinations(rules, size))
    return combos


def describe_combo(combo: Sequence[DiscountRule], amount: float,
                   origin: Origin = Origin.AUTO) -> AppliedDiscount:
    if len(combo) == 1:
        return AppliedDiscount(
            code=combo[0].code,
            appliedAmount=amount,
            ruleIds=[combo[0].id],
            sourceRule=combo[0],
            origin=origin,
        )
    return AppliedDiscount(
        code="+".join(rule.code for rule in combo),
        appliedAmount=amount,
        ruleIds=[rule.id for rule in combo],
        combinedRules=list(combo),
        origin=origin,
    )


def choose_best(rules: Sequence[DiscountRule], lines: Sequence[CartLine],
                now: Optional[datetime] = None,
                max_size: int = MAX_COMBO_SIZE) -> Optional[AppliedDiscount]:
    """
    Pick the combo of active rules that saves the most.

    Rule:
     1. Highest total discount
     2. If tie, the combo met first (singles before pairs before triples,
        catalog order within a size)
    Returns None when nothing saves anything.
    """
    if now is None:
        now = _utcnow()

    active = [rule for rule in rules if rule.active]
    best_combo: Tuple[DiscountRule, ...] = ()
    best_amount = 0.0

    for combo in candidate_combos(active, max_size):
        amount = score_combo(combo, lines, now)
        if amount is None:
            continue
        if amount > best_amount:
            best_combo, best_amount = combo, amount

    if best_amount <= 0:
        logger.debug("No discount applies to a cart of %d lines", len(lines))
        return None

    logger.debug("Best combo %s saves %.2f", [r.code for r in best_combo], best_amount)
    return describe_combo(best_combo, best_amount)


# ---------------------------
# Manual Coupon Path
# ---------------------------

def find_rule(code: str, rules: Sequence[DiscountRule]) -> Optional[DiscountRule]:
    wanted = code.strip().lower()
    for rule in rules:
        if rule.code and rule.code.lower() == wanted:
            return rule
    return None


def apply_code(code: Optional[str], rules: Sequence[DiscountRule], lines: Sequence[CartLine],
               now: Optional[datetime] = None) -> EvaluationResult:
    if not code or not code.strip():
        return _invalid(Reason.EMPTY)

    rule = find_rule(code, rules)
    if rule is None:
        return _invalid(Reason.NOT_FOUND)

    result = evaluate(rule, lines, now)
    return result.model_copy(update={"rule": rule})


def manual_discount(result: EvaluationResult) -> Optional[AppliedDiscount]:
    if not result.valid or result.rule is None:
        return None
    rule = result.rule
    return AppliedDiscount(
        code=rule.code.upper(),
        appliedAmount=result.appliedAmount,
        ruleIds=[rule.id],
        sourceRule=rule,
        origin=Origin.MANUAL,
    )


def applicable_rules(rules: Sequence[DiscountRule], lines: Sequence[CartLine],
                     now: Optional[datetime] = None) -> List[RuleEvaluation]:
    """Every rule with its evaluation against the cart, for the promotion picker."""
    if now is None:
        now = _utcnow()
    return [RuleEvaluation(rule=rule, result=evaluate(rule, lines, now)) for rule in rules]


# ---------------------------
# Bill totals
# ---------------------------

def compute_tax(lines: Sequence[CartLine], vat_percent: float = 0, vat_enabled: bool = False) -> float:
    tax = 0.0
    for line in lines:
        percent = line.taxPercent if line.taxPercent > 0 else (vat_percent if vat_enabled else 0)
        tax += line.unitPrice * line.quantity * percent / 100
    return round2(tax)


def compute_totals(lines: Sequence[CartLine], applied: Optional[AppliedDiscount] = None,
                   vat_percent: float = 0, vat_enabled: bool = False) -> BillTotals:
    subtotal = compute_subtotal(lines)
    tax = compute_tax(lines, vat_percent, vat_enabled)
    discount = applied.appliedAmount if applied is not None else 0.0
    grand = round2(max(0.0, subtotal - discount) + tax)
    return BillTotals(subtotal=subtotal, tax=tax, discount=discount, grandTotal=grand)
