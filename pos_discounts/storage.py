from typing import Dict, List
from .models import DiscountRule

ACTIVE_VIEW = "active"
ALL_VIEW = "all"

# view name -> last successfully fetched rules, in source order
RULE_CACHE: Dict[str, List[DiscountRule]] = {}


def cached_rules(cache: Dict[str, List[DiscountRule]], view: str) -> List[DiscountRule]:
    return list(cache.get(view, []))


def store_rules(cache: Dict[str, List[DiscountRule]], view: str, rules: List[DiscountRule]) -> None:
    # replaced wholesale, never mutated in place
    cache[view] = list(rules)
