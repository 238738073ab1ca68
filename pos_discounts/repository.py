"""
Remote discount rule source.

Rules come from the billing backend as loosely-shaped records: the same
field shows up under different names depending on which admin screen or
import created it. `normalize_rule` maps every known alias onto the
canonical `DiscountRule`; the repository caches the result per view and
falls back to the cache whenever the backend cannot be reached.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from .config import Settings, get_settings
from .models import DiscountRule, DiscountScope, DiscountType, ItemMatch, Reason
from .storage import ACTIVE_VIEW, ALL_VIEW, RULE_CACHE, cached_rules, store_rules

logger = logging.getLogger(__name__)

ACTIVE_PATH = "/api/discounts/active"
ALL_PATH = "/api/discounts"

# canonical field -> accepted source keys, first present wins
FIELD_ALIASES: Dict[str, tuple] = {
    "id": ("id", "_id"),
    "code": ("code", "coupon_code", "name", "discount_code"),
    "type": ("type", "discount_type"),
    "scope": ("scope", "discount_scope"),
    "value": ("value", "amount", "percent", "discount_value"),
    "maxValue": ("max_value", "max_discount", "maximum_value", "maxValue"),
    "minOrderValue": ("min_order_value", "min_order_amount", "minimum_value", "minOrderValue"),
    "stackable": ("stackable", "is_stackable"),
    "startAt": ("start_at", "startDate", "valid_from", "starts_at", "startAt"),
    "endAt": ("end_at", "endDate", "valid_until", "ends_at", "endAt"),
    "description": ("description", "title", "name"),
    "tokens": ("appliesTo.nameContains", "applies_to.name_contains", "name_contains", "item_tokens"),
    "sku": ("sku", "item_sku", "appliesTo.sku"),
}

TYPE_ALIASES = {
    "percent": DiscountType.PERCENT,
    "percentage": DiscountType.PERCENT,
    "%": DiscountType.PERCENT,
    "flat": DiscountType.FLAT,
    "fixed": DiscountType.FLAT,
    "amount": DiscountType.FLAT,
}

SCOPE_ALIASES = {
    "order": DiscountScope.ORDER,
    "cart": DiscountScope.ORDER,
    "item": DiscountScope.ITEM,
    "product": DiscountScope.ITEM,
}


class RuleNormalizationError(ValueError):
    pass


class RuleSourceError(Exception):
    """The rule source refused or failed a change request."""


def _lookup(raw: Dict[str, Any], key: str) -> Any:
    value: Any = raw
    for part in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _pick(raw: Dict[str, Any], field: str, default: Any = None) -> Any:
    for key in FIELD_ALIASES[field]:
        value = _lookup(raw, key)
        if value is not None and value != "":
            return value
    return default


def _as_number(raw: Dict[str, Any], field: str) -> float:
    value = _pick(raw, field, 0)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RuleNormalizationError(f"{field} is not a number: {value!r}") from None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


def _is_active(raw: Dict[str, Any]) -> bool:
    for key in ("active", "is_active"):
        if raw.get(key) is not None:
            return _as_bool(raw[key])
    if raw.get("status") is not None:
        return str(raw["status"]).lower() == "active"
    return True


def _item_match(raw: Dict[str, Any]) -> Optional[ItemMatch]:
    tokens = _pick(raw, "tokens", [])
    if isinstance(tokens, str):
        tokens = [t.strip() for t in tokens.split(",")]
    tokens = [str(t) for t in tokens if t]
    sku = _pick(raw, "sku")

    if not tokens and sku is None:
        return None
    return ItemMatch(tokens=tokens, sku=str(sku) if sku is not None else None)


def normalize_rule(raw: Dict[str, Any]) -> DiscountRule:
    code = str(_pick(raw, "code", "RULE"))

    type_name = str(_pick(raw, "type", "percent")).strip().lower()
    if type_name not in TYPE_ALIASES:
        raise RuleNormalizationError(f"unknown discount type {type_name!r}")

    scope_name = str(_pick(raw, "scope", "order")).strip().lower()
    if scope_name not in SCOPE_ALIASES:
        raise RuleNormalizationError(f"unknown discount scope {scope_name!r}")

    return DiscountRule(
        id=str(_pick(raw, "id", code)),
        code=code,
        type=TYPE_ALIASES[type_name],
        scope=SCOPE_ALIASES[scope_name],
        value=_as_number(raw, "value"),
        maxValue=_as_number(raw, "maxValue"),
        minOrderValue=_as_number(raw, "minOrderValue"),
        stackable=_as_bool(_pick(raw, "stackable", False)),
        startAt=_pick(raw, "startAt"),
        endAt=_pick(raw, "endAt"),
        itemMatch=_item_match(raw),
        active=_is_active(raw),
        description=str(_pick(raw, "description", "Discount rule")),
    )


def normalize_rules(records: Iterable[Dict[str, Any]]) -> List[DiscountRule]:
    rules = []
    for raw in records:
        try:
            rules.append(normalize_rule(raw))
        except (RuleNormalizationError, ValidationError) as exc:
            logger.warning("Skipping malformed discount rule %r: %s", raw.get("id") or raw.get("code"), exc)
    return rules


class RuleRepository:
    """Fetches and caches discount rules; never raises on a failed read."""

    def __init__(self, settings: Optional[Settings] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[Dict[str, List[DiscountRule]]] = None):
        self.settings = settings or get_settings()
        self.cache = RULE_CACHE if cache is None else cache
        self.loading = False
        self.warning: Optional[str] = None
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.auth_token:
            headers["Authorization"] = f"Bearer {self.settings.auth_token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.api_base,
                timeout=self.settings.request_timeout,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def cached(self, view: str = ACTIVE_VIEW) -> List[DiscountRule]:
        return cached_rules(self.cache, view)

    def find(self, rule_id: str) -> Optional[DiscountRule]:
        for view in (ALL_VIEW, ACTIVE_VIEW):
            for rule in self.cached(view):
                if rule.id == rule_id:
                    return rule
        return None

    async def load_active(self) -> List[DiscountRule]:
        return await self._load(ACTIVE_VIEW, ACTIVE_PATH)

    async def load_all(self) -> List[DiscountRule]:
        return await self._load(ALL_VIEW, ALL_PATH)

    async def _load(self, view: str, path: str) -> List[DiscountRule]:
        if self.loading:
            logger.debug("Rule fetch already in flight, serving cached %s rules", view)
            return self.cached(view)

        self.loading = True
        try:
            records = await self._fetch(path)
        except (httpx.HTTPError, ValueError) as exc:
            previous = self.cached(view)
            self.warning = f"{Reason.FETCH_FAILED.value}: {exc}"
            logger.warning("Discount rules unavailable (%s); using %d cached rules", exc, len(previous))
            return previous
        finally:
            self.loading = False

        rules = normalize_rules(records)
        store_rules(self.cache, view, rules)
        self.warning = None
        logger.info("Loaded %d %s discount rules", len(rules), view)
        return list(rules)

    async def _fetch(self, path: str) -> List[Dict[str, Any]]:
        response = await self._get_client().get(path, headers=self._headers())
        response.raise_for_status()
        payload = response.json()

        if isinstance(payload, dict):
            payload = payload.get("data") or []
        if not isinstance(payload, list):
            raise ValueError(f"unexpected rule payload from {path}")
        return [record for record in payload if isinstance(record, dict)]

    async def toggle_active(self, rule: DiscountRule) -> bool:
        """Flip a rule's active flag at the source, then refresh the cached views."""
        if rule.active:
            path, body = f"{ALL_PATH}/{rule.id}/deactivate", None
        else:
            path, body = f"{ALL_PATH}/{rule.id}", {"active": True}

        try:
            response = await self._get_client().put(path, json=body, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Status change for rule %s failed: %s", rule.code, exc)
            raise RuleSourceError(f"Could not change status of {rule.code}") from exc

        logger.info("Rule %s %s", rule.code, "deactivated" if rule.active else "activated")
        refresh_all = ALL_VIEW in self.cache
        await self.load_active()
        if refresh_all:
            await self.load_all()
        return not rule.active
