"""
Tests for shipping rule matching, pricing and the ShippingService.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from integration_engine.core.exceptions import NotFoundError, ValidationError
from integration_engine.models.shipping import ShippingMethod, ShippingMethodType, ShippingRule
from integration_engine.services.shipping_service import (
    CartItemForShipping,
    ShippingDestination,
    ShippingRuleEngine,
    ShippingService,
    money,
)

_counter = {"n": 0}


def make_rule(rate="5.00", priority=0, conditions=None, threshold=None, is_active=True, name=None, days=None):
    _counter["n"] += 1
    return ShippingRule(
        id=f"rule-{_counter['n']}",
        name=name or f"Rule {_counter['n']}",
        priority=priority,
        conditions=conditions or {},
        rate=Decimal(rate),
        free_shipping_threshold=Decimal(threshold) if threshold is not None else None,
        estimated_days=days,
        is_active=is_active,
    )


def make_method(type=ShippingMethodType.FLAT_RATE, rules=None, is_active=True, name="Standard", seller_id=None):
    _counter["n"] += 1
    return ShippingMethod(
        id=f"method-{_counter['n']}",
        name=name,
        type=type,
        seller_id=seller_id,
        is_active=is_active,
        rules=rules or [],
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def engine():
    return ShippingRuleEngine()


@pytest.fixture
def london():
    return ShippingDestination(country="GB", state=None, city="London", postal_code="EC1A 1BB")


@pytest.fixture
def new_york():
    return ShippingDestination(country="US", state="NY", city="New York", postal_code="10118")


class TestMatching:

    def test_empty_conditions_match(self, engine, london):
        assert engine.matches({}, Decimal("1"), Decimal("10"), london)
        assert engine.matches(None, Decimal("1"), Decimal("10"), london)

    def test_weight_range_inclusive(self, engine, london):
        conditions = {"weightRange": {"min": 1, "max": 5}}

        assert engine.matches(conditions, Decimal("1"), Decimal("0"), london)
        assert engine.matches(conditions, Decimal("5"), Decimal("0"), london)
        assert not engine.matches(conditions, Decimal("0.99"), Decimal("0"), london)
        assert not engine.matches(conditions, Decimal("5.01"), Decimal("0"), london)

    def test_open_ended_ranges(self, engine, london):
        assert engine.matches({"cartValueRange": {"min": 50}}, Decimal("1"), Decimal("1000"), london)
        assert not engine.matches({"cartValueRange": {"max": "49.99"}}, Decimal("1"), Decimal("50"), london)

    def test_country_is_strict(self, engine, new_york):
        assert engine.matches({"country": "us"}, Decimal("1"), Decimal("1"), new_york)
        assert not engine.matches({"country": "GB"}, Decimal("1"), Decimal("1"), new_york)
        assert not engine.matches({"country": "US"}, Decimal("1"), Decimal("1"), ShippingDestination(country=""))

    def test_state_city_postcode_lenient_when_destination_lacks_them(self, engine, london):
        conditions = {"state": "England", "city": "london", "postalCode": "EC1A 1BB"}
        assert engine.matches(conditions, Decimal("1"), Decimal("1"), london)

    def test_state_mismatch(self, engine, new_york):
        assert not engine.matches({"state": "CA"}, Decimal("1"), Decimal("1"), new_york)

    def test_numeric_postcode_condition(self, engine, new_york):
        assert engine.matches({"postalCode": 10118}, Decimal("1"), Decimal("1"), new_york)


class TestRuleSelection:

    def test_highest_priority_matching_rule(self, engine, new_york):
        low = make_rule("3.00", priority=1)
        high = make_rule("9.00", priority=10, conditions={"country": "US"})
        other = make_rule("1.00", priority=50, conditions={"country": "GB"})

        assert engine.find_matching_rule([low, high, other], Decimal("1"), Decimal("1"), new_york) is high

    def test_inactive_rules_skipped(self, engine, new_york):
        inactive = make_rule("1.00", priority=100, is_active=False)
        active = make_rule("4.00", priority=0)

        assert engine.find_matching_rule([inactive, active], Decimal("1"), Decimal("1"), new_york) is active

    def test_equal_priority_keeps_storage_order(self, engine, new_york):
        first = make_rule("4.00", priority=5)
        second = make_rule("2.00", priority=5)

        assert engine.find_matching_rule([first, second], Decimal("1"), Decimal("1"), new_york) is first

    def test_no_match(self, engine, new_york):
        rule = make_rule(conditions={"weightRange": {"max": 1}})
        assert engine.find_matching_rule([rule], Decimal("2"), Decimal("1"), new_york) is None


class TestPricing:

    def test_weight_based(self, engine):
        assert engine.calculate_rate_by_type(ShippingMethodType.WEIGHT_BASED, make_rule("2.50"), Decimal("1.5")) == Decimal("3.75")

    def test_weight_based_rounds_half_up(self, engine):
        assert engine.calculate_rate_by_type("WEIGHT_BASED", make_rule("1.25"), Decimal("0.5")) == Decimal("0.63")

    def test_flat_rate(self, engine):
        assert engine.calculate_rate_by_type("FLAT_RATE", make_rule("4.99"), Decimal("20")) == Decimal("4.99")

    def test_free_and_pickup(self, engine):
        rule = make_rule("7.00")
        assert engine.calculate_rate_by_type(ShippingMethodType.FREE_SHIPPING, rule, Decimal("1")) == Decimal("0.00")
        assert engine.calculate_rate_by_type(ShippingMethodType.PICKUP_IN_STORE, rule, Decimal("1")) == Decimal("0.00")

    def test_distance_based_uses_flat_rate(self, engine, caplog):
        with caplog.at_level(logging.WARNING):
            rate = engine.calculate_rate_by_type(ShippingMethodType.DISTANCE_BASED, make_rule("6.00"), Decimal("1"))

        assert rate == Decimal("6.00")
        assert "DISTANCE_BASED" in caplog.text

    def test_money(self):
        assert money("2.005") == Decimal("2.01")
        assert money(3) == Decimal("3.00")


class TestResolve:

    def test_options_sorted_by_rate(self, engine, new_york):
        express = make_method(rules=[make_rule("12.00")], name="Express")
        standard = make_method(rules=[make_rule("4.00")], name="Standard")
        collect = make_method(ShippingMethodType.PICKUP_IN_STORE, rules=[make_rule("0.00")], name="Collect")

        options = engine.resolve([express, standard, collect], "1.0", "20.00", new_york)

        assert [o.method.name for o in options] == ["Collect", "Standard", "Express"]
        assert options[0].free_shipping is True
        assert options[1].free_shipping is False

    def test_free_shipping_threshold(self, engine, new_york):
        method = make_method(rules=[make_rule("5.00", threshold="50.00")])

        assert engine.resolve([method], 1, "50.00", new_york)[0].rate == Decimal("0.00")
        assert engine.resolve([method], 1, "49.99", new_york)[0].rate == Decimal("5.00")

    def test_zero_threshold_always_free(self, engine, new_york):
        method = make_method(ShippingMethodType.WEIGHT_BASED, rules=[make_rule("3.00", threshold="0")])

        option = engine.resolve([method], 2, 0, new_york)[0]
        assert option.rate == Decimal("0.00")
        assert option.free_shipping is True

    @pytest.mark.parametrize("method_type", list(ShippingMethodType))
    def test_met_threshold_is_free_for_every_type(self, engine, new_york, method_type):
        method = make_method(method_type, rules=[make_rule("7.25", threshold="40.00")])

        option = engine.resolve([method], "2.5", "40.00", new_york)[0]

        assert option.rate == Decimal("0.00")
        assert option.free_shipping is True

    def test_resolution_is_deterministic(self, engine, london):
        methods = [
            make_method(rules=[make_rule("4.00")], name="Tracked 48"),
            make_method(ShippingMethodType.WEIGHT_BASED, rules=[make_rule("2.00")], name="Parcel"),
            make_method(rules=[make_rule("4.00")], name="Tracked 24"),
            make_method(ShippingMethodType.PICKUP_IN_STORE, rules=[make_rule("1.00")], name="Collect"),
        ]

        runs = [
            [(o.method.id, o.rule.id, o.rate) for o in engine.resolve(methods, "2", "30", london)]
            for _ in range(3)
        ]

        assert runs[0] == runs[1] == runs[2]
        # Equal rates keep method order
        assert [o.method.name for o in engine.resolve(methods, "2", "30", london)] == [
            "Collect", "Tracked 48", "Parcel", "Tracked 24",
        ]

    def test_weight_based_priority_rule_wins(self, engine):
        rule_a = make_rule("2.00", priority=10, conditions={"weightRange": {"max": 5}}, name="Up to 5kg")
        rule_b = make_rule("1.00", priority=1, name="Any weight")
        method = make_method(ShippingMethodType.WEIGHT_BASED, rules=[rule_b, rule_a])

        options = engine.resolve([method], "3", "20.00", ShippingDestination(country="GB"))

        assert len(options) == 1
        assert options[0].rule is rule_a
        assert options[0].rate == Decimal("6.00")

    def test_inactive_and_unmatched_methods_omitted(self, engine, new_york):
        inactive = make_method(rules=[make_rule("1.00")], is_active=False)
        uk_only = make_method(rules=[make_rule("2.00", conditions={"country": "GB"})])
        open_method = make_method(rules=[make_rule("8.00")], name="Anywhere")

        options = engine.resolve([inactive, uk_only, open_method], 1, 10, new_york)

        assert [o.method.name for o in options] == ["Anywhere"]

    def test_to_dict(self, engine, new_york):
        method = make_method(ShippingMethodType.WEIGHT_BASED, rules=[make_rule("2.00", days=3, name="US ground")])

        data = engine.resolve([method], "2", "10", new_york)[0].to_dict()

        assert data["method"]["type"] == "WEIGHT_BASED"
        assert data["rule"]["name"] == "US ground"
        assert data["rule"]["estimated_days"] == 3
        assert data["rate"] == 4.0
        assert data["free_shipping"] is False


class TestShippingService:

    @pytest.fixture
    def service(self, mock_db):
        return ShippingService(mock_db)

    @pytest.mark.asyncio
    async def test_platform_scope_query(self, service, mock_db, scalars_result):
        mock_db.execute.return_value = scalars_result([])

        await service.find_all_shipping_methods()

        statement = str(mock_db.execute.call_args.args[0])
        assert "shipping_methods.seller_id IS NULL" in statement
        assert "ORDER BY shipping_methods.created_at DESC" in statement

    @pytest.mark.asyncio
    async def test_seller_scope_query(self, service, mock_db, scalars_result):
        mock_db.execute.return_value = scalars_result([])

        await service.find_all_shipping_methods("seller-9")

        statement = mock_db.execute.call_args.args[0]
        assert "shipping_methods.seller_id = " in str(statement)
        assert "seller-9" in statement.compile().params.values()

    @pytest.mark.asyncio
    async def test_calculate_shipping_rate(self, service, mock_db, scalars_result, new_york):
        methods = [
            make_method(rules=[make_rule("9.00")], name="Express"),
            make_method(rules=[make_rule("3.50")], name="Economy"),
        ]
        mock_db.execute.return_value = scalars_result(methods)

        options = await service.calculate_shipping_rate(Decimal("1"), Decimal("30"), new_york)

        assert [o.method.name for o in options] == ["Economy", "Express"]

    @pytest.mark.asyncio
    async def test_shipping_options_default_item_weight(self, service, mock_db, scalars_result, new_york):
        method = make_method(ShippingMethodType.WEIGHT_BASED, rules=[make_rule("2.00")])
        mock_db.execute.return_value = scalars_result([method])
        items = [
            CartItemForShipping(product_id="p1", quantity=2, weight=1.25),
            CartItemForShipping(product_id="p2", quantity=3),
        ]

        options = await service.get_shipping_options(items, "40.00", new_york)

        # 2 x 1.25kg + 3 x 0.5kg default = 4kg at 2.00/kg
        assert options[0].rate == Decimal("8.00")

    @pytest.mark.asyncio
    async def test_method_not_found(self, service, mock_db, scalars_result):
        mock_db.execute.return_value = scalars_result([])

        with pytest.raises(NotFoundError):
            await service.find_shipping_method_by_id("missing")

    @pytest.mark.asyncio
    async def test_create_shipping_method(self, service, mock_db):
        method = await service.create_shipping_method("Next day", "FLAT_RATE", seller_id="seller-1")

        assert method.type == ShippingMethodType.FLAT_RATE
        assert method.seller_id == "seller-1"
        mock_db.add.assert_called_once_with(method)
        mock_db.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_method_rejects_unknown_field(self, service, mock_db, scalars_result):
        mock_db.execute.return_value = scalars_result([make_method()])

        with pytest.raises(ValidationError) as exc_info:
            await service.update_shipping_method("method-1", colour="blue")
        assert exc_info.value.field == "colour"

    @pytest.mark.asyncio
    async def test_update_method_type(self, service, mock_db, scalars_result):
        method = make_method()
        mock_db.execute.return_value = scalars_result([method])

        await service.update_shipping_method(method.id, type="WEIGHT_BASED", is_active=False)

        assert method.type == ShippingMethodType.WEIGHT_BASED
        assert method.is_active is False

    @pytest.mark.asyncio
    async def test_create_rule_rounds_money(self, service, mock_db, scalars_result):
        mock_db.execute.return_value = scalars_result([make_method()])

        rule = await service.create_shipping_rule(
            "method-1", "Heavy", rate="4.555", priority=3,
            conditions={"weightRange": {"min": 5, "max": 30}}, free_shipping_threshold=100,
        )

        assert rule.rate == Decimal("4.56")
        assert rule.free_shipping_threshold == Decimal("100.00")
        assert rule.priority == 3

    @pytest.mark.asyncio
    async def test_create_rule_rejects_inverted_range(self, service, mock_db, scalars_result):
        mock_db.execute.return_value = scalars_result([make_method()])

        with pytest.raises(ValidationError) as exc_info:
            await service.create_shipping_rule("method-1", "Bad", rate=1, conditions={"weightRange": {"min": 10, "max": 1}})
        assert exc_info.value.field == "conditions.weightRange"

    @pytest.mark.asyncio
    async def test_update_rule(self, service, mock_db, scalars_result):
        rule = make_rule("5.00")
        mock_db.execute.return_value = scalars_result([rule])

        await service.update_shipping_rule(rule.id, rate="6.499", free_shipping_threshold=None)

        assert rule.rate == Decimal("6.50")
        assert rule.free_shipping_threshold is None

    @pytest.mark.asyncio
    async def test_update_missing_rule(self, service, mock_db, scalars_result):
        mock_db.execute.return_value = scalars_result([])

        with pytest.raises(NotFoundError):
            await service.update_shipping_rule("missing", rate=1)
