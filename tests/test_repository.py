import asyncio
import json
from datetime import timezone

import httpx
import pytest

from pos_discounts.models import DiscountScope, DiscountType
from pos_discounts.repository import (
    RuleRepository,
    RuleSourceError,
    normalize_rule,
    normalize_rules,
)

RULES_PAYLOAD = {
    "data": [
        {"id": "r1", "code": "SAVE10", "type": "percent", "value": 10, "max_value": 200, "stackable": True},
        {"_id": "r2", "coupon_code": "FLAT50", "discount_type": "flat", "amount": 50, "min_order_amount": 200},
    ]
}


def make_repo(settings, handler, cache=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=settings.api_base)
    return RuleRepository(settings, client=client, cache={} if cache is None else cache)


# ---------------------------
# Normalization
# ---------------------------

def test_normalize_reads_aliases():
    rule = normalize_rule({
        "_id": "abc",
        "coupon_code": "FEST",
        "discount_type": "flat",
        "discount_scope": "order",
        "amount": "25",
        "max_discount": 40,
        "min_order_amount": 100,
        "is_stackable": 1,
        "valid_from": "2025-01-01T00:00:00",
        "valid_until": "2025-12-31T23:59:59Z",
        "title": "Festival offer",
    })

    assert rule.id == "abc"
    assert rule.code == "FEST"
    assert rule.type == DiscountType.FLAT
    assert rule.scope == DiscountScope.ORDER
    assert rule.value == 25
    assert rule.maxValue == 40
    assert rule.minOrderValue == 100
    assert rule.stackable is True
    assert rule.startAt.tzinfo == timezone.utc
    assert rule.endAt.year == 2025
    assert rule.description == "Festival offer"
    assert rule.active is True


def test_normalize_fills_defaults():
    rule = normalize_rule({"code": "PLAIN"})
    assert rule.id == "PLAIN"
    assert rule.type == DiscountType.PERCENT
    assert rule.scope == DiscountScope.ORDER
    assert rule.value == 0
    assert rule.maxValue == 0
    assert rule.stackable is False
    assert rule.active is True
    assert rule.startAt is None
    assert rule.itemMatch is None
    assert rule.description == "Discount rule"


def test_normalize_active_flags():
    assert normalize_rule({"code": "A", "is_active": False}).active is False
    assert normalize_rule({"code": "A", "status": "inactive"}).active is False
    assert normalize_rule({"code": "A", "status": "active"}).active is True
    assert normalize_rule({"code": "A", "active": "false"}).active is False


def test_normalize_item_match():
    rule = normalize_rule({
        "code": "DAIRY",
        "scope": "item",
        "type": "percentage",
        "percent": 15,
        "appliesTo": {"nameContains": ["milk", "curd"]},
        "sku": "MILK-1",
    })
    assert rule.scope == DiscountScope.ITEM
    assert rule.type == DiscountType.PERCENT
    assert rule.value == 15
    assert rule.itemMatch.tokens == ["milk", "curd"]
    assert rule.itemMatch.sku == "MILK-1"

    comma = normalize_rule({"code": "X", "scope": "item", "name_contains": "egg, bread"})
    assert comma.itemMatch.tokens == ["egg", "bread"]


def test_malformed_records_are_skipped():
    rules = normalize_rules([
        {"code": "GOOD", "value": 5},
        {"code": "BOGO", "type": "buy_one_get_one"},
        {"code": "NAN", "value": "lots"},
        {"code": "BADDATE", "start_at": "someday"},
    ])
    assert [rule.code for rule in rules] == ["GOOD"]


# ---------------------------
# Fetching
# ---------------------------

def test_load_active_normalizes_and_caches(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=RULES_PAYLOAD)

    cache = {}
    repo = make_repo(settings, handler, cache)
    rules = asyncio.run(repo.load_active())

    assert [rule.code for rule in rules] == ["SAVE10", "FLAT50"]
    assert rules[1].id == "r2"
    assert repo.warning is None
    assert repo.cached() == rules
    assert [rule.code for rule in cache["active"]] == ["SAVE10", "FLAT50"]
    assert seen[0].url.path == "/api/discounts/active"
    assert seen[0].headers["Authorization"] == "Bearer secret"


def test_bare_list_payload_is_accepted(settings):
    repo = make_repo(settings, lambda request: httpx.Response(200, json=[{"code": "ONLY"}]))
    assert [rule.code for rule in asyncio.run(repo.load_active())] == ["ONLY"]


def test_first_failure_gives_empty_list_and_warning(settings):
    def handler(request):
        raise httpx.ConnectError("backend down", request=request)

    repo = make_repo(settings, handler)
    assert asyncio.run(repo.load_active()) == []
    assert repo.warning.startswith("fetch_failed")
    assert repo.loading is False


def test_failure_falls_back_to_previous_rules(settings):
    responses = [
        httpx.Response(200, json=RULES_PAYLOAD),
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, text="<html>maintenance</html>"),
    ]
    repo = make_repo(settings, lambda request: responses.pop(0))

    first = asyncio.run(repo.load_active())
    second = asyncio.run(repo.load_active())
    assert second == first
    assert repo.warning.startswith("fetch_failed")

    third = asyncio.run(repo.load_active())
    assert third == first
    assert repo.warning.startswith("fetch_failed")


def test_concurrent_load_serves_cache_instead_of_refetching(settings):
    calls = []

    async def scenario():
        release = asyncio.Event()

        async def handler(request):
            calls.append(request.url.path)
            await release.wait()
            return httpx.Response(200, json=RULES_PAYLOAD)

        repo = make_repo(settings, handler)
        first = asyncio.create_task(repo.load_active())
        while not calls:
            await asyncio.sleep(0)

        assert repo.loading is True
        assert await repo.load_active() == []

        release.set()
        return await first

    rules = asyncio.run(scenario())
    assert len(rules) == 2
    assert calls == ["/api/discounts/active"]


def test_load_all_uses_its_own_view(settings):
    def handler(request):
        assert request.url.path == "/api/discounts"
        return httpx.Response(200, json={"data": [{"code": "OLD", "active": False}]})

    repo = make_repo(settings, handler)
    rules = asyncio.run(repo.load_all())
    assert rules[0].active is False
    assert repo.cached("all") == rules
    assert repo.cached() == []
    assert repo.find("OLD") == rules[0]


# ---------------------------
# Toggling
# ---------------------------

def test_deactivate_uses_dedicated_route_and_refreshes(settings):
    requests = []

    def handler(request):
        requests.append((request.method, request.url.path, request.content))
        if request.method == "PUT":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(200, json={"data": []})

    repo = make_repo(settings, handler)
    rule = normalize_rule({"id": "r1", "code": "SAVE10"})

    assert asyncio.run(repo.toggle_active(rule)) is False
    assert requests[0][:2] == ("PUT", "/api/discounts/r1/deactivate")
    assert requests[1][:2] == ("GET", "/api/discounts/active")
    assert len(requests) == 2


def test_activate_sends_flag_and_refreshes_loaded_views(settings):
    requests = []

    def handler(request):
        requests.append((request.method, request.url.path, request.content))
        return httpx.Response(200, json={"data": []})

    repo = make_repo(settings, handler, cache={"all": []})
    rule = normalize_rule({"id": "r9", "code": "OLD", "active": False})

    assert asyncio.run(repo.toggle_active(rule)) is True
    method, path, body = requests[0]
    assert (method, path) == ("PUT", "/api/discounts/r9")
    assert json.loads(body) == {"active": True}
    assert [r[1] for r in requests[1:]] == ["/api/discounts/active", "/api/discounts"]


def test_toggle_failure_raises(settings):
    repo = make_repo(settings, lambda request: httpx.Response(403, json={"error": "forbidden"}))
    rule = normalize_rule({"id": "r1", "code": "SAVE10"})

    with pytest.raises(RuleSourceError):
        asyncio.run(repo.toggle_active(rule))
