from .logic import apply_code, choose_best, evaluate, reprice, round2
from .models import AppliedDiscount, CartLine, DiscountRule, EvaluationResult, Reason
from .repository import RuleRepository, normalize_rule
from .session import BillingSession

__all__ = [
    "AppliedDiscount",
    "BillingSession",
    "CartLine",
    "DiscountRule",
    "EvaluationResult",
    "Reason",
    "RuleRepository",
    "apply_code",
    "choose_best",
    "evaluate",
    "normalize_rule",
    "reprice",
    "round2",
]
