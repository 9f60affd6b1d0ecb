"""
Shipping Rate Resolution v1.0.0

- ShippingRuleEngine: pure rule matching and pricing over loaded methods
- ShippingService: scope-aware method/rule persistence plus checkout
  shipping options

Pricing:
- Per method, active rules are tried by descending priority; the first
  rule whose present conditions all match wins (ranges inclusive)
- FLAT_RATE = rate, WEIGHT_BASED = rate x kg, FREE_SHIPPING and
  PICKUP_IN_STORE = 0, DISTANCE_BASED and HYPERLOCAL = rate
- cart_value >= free_shipping_threshold forces 0
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from integration_engine.core.config import settings
from integration_engine.core.exceptions import NotFoundError, ValidationError
from integration_engine.models.shipping import ShippingMethod, ShippingMethodType, ShippingRule

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

METHOD_FIELDS = ("name", "description", "type", "seller_id", "is_active")
RULE_FIELDS = ("name", "priority", "conditions", "rate", "free_shipping_threshold", "estimated_days", "is_active")

# Types priced at the flat rule rate until distance pricing exists
FLAT_FALLBACK_TYPES = (ShippingMethodType.DISTANCE_BASED, ShippingMethodType.HYPERLOCAL)


def money(value: Any) -> Decimal:
    """Decimal rounded to cents, half up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass
class ShippingDestination:
    country: str
    state: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class CartItemForShipping:
    product_id: str
    quantity: int
    weight: Optional[float] = None  # kg per unit


@dataclass
class ShippingOption:
    """One priced shipping method; options for a cart are mutually exclusive."""
    method: ShippingMethod
    rule: ShippingRule
    rate: Decimal
    free_shipping: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": {
                "id": self.method.id,
                "name": self.method.name,
                "description": self.method.description,
                "type": ShippingMethodType(self.method.type).value if self.method.type else None,
            },
            "rule": {
                "id": self.rule.id,
                "name": self.rule.name,
                "estimated_days": self.rule.estimated_days,
            },
            "rate": float(self.rate),
            "free_shipping": self.free_shipping,
        }


class ShippingRuleEngine:
    """Stateless rule matching and pricing."""

    @staticmethod
    def _outside_range(value: Decimal, bounds: Optional[Dict[str, Any]]) -> bool:
        if not bounds:
            return False
        low, high = bounds.get("min"), bounds.get("max")
        if low is not None and value < Decimal(str(low)):
            return True
        if high is not None and value > Decimal(str(high)):
            return True
        return False

    @staticmethod
    def _differs(expected: Any, actual: Any) -> bool:
        return str(expected).strip().lower() != str(actual).strip().lower()

    def matches(
        self,
        conditions: Optional[Dict[str, Any]],
        weight: Decimal,
        cart_value: Decimal,
        destination: ShippingDestination,
    ) -> bool:
        """
        Whether every present condition holds.

        state/city/postalCode only constrain destinations that carry that field.
        """
        conditions = conditions or {}

        if self._outside_range(weight, conditions.get("weightRange")):
            return False
        if self._outside_range(cart_value, conditions.get("cartValueRange")):
            return False

        country = conditions.get("country")
        if country and (not destination.country or self._differs(country, destination.country)):
            return False

        for key, actual in (
            ("state", destination.state),
            ("city", destination.city),
            ("postalCode", destination.postal_code),
        ):
            expected = conditions.get(key)
            if expected and actual and self._differs(expected, actual):
                return False

        return True

    def find_matching_rule(
        self,
        rules: Iterable[ShippingRule],
        weight: Decimal,
        cart_value: Decimal,
        destination: ShippingDestination,
    ) -> Optional[ShippingRule]:
        """Highest-priority active rule whose conditions match."""
        active = [rule for rule in rules if rule.is_active]
        # stable sort keeps storage order among equal priorities
        active.sort(key=lambda rule: rule.priority or 0, reverse=True)

        for rule in active:
            if self.matches(rule.conditions, weight, cart_value, destination):
                return rule
        return None

    def calculate_rate_by_type(self, method_type: ShippingMethodType, rule: ShippingRule, weight: Decimal) -> Decimal:
        method_type = ShippingMethodType(method_type)
        base_rate = Decimal(str(rule.rate))

        if method_type == ShippingMethodType.WEIGHT_BASED:
            return money(base_rate * weight)
        if method_type in (ShippingMethodType.FREE_SHIPPING, ShippingMethodType.PICKUP_IN_STORE):
            return ZERO
        if method_type in FLAT_FALLBACK_TYPES:
            logger.warning(f"{method_type.value} pricing not implemented, using flat rate for rule {rule.id}")
        return money(base_rate)

    def resolve(
        self,
        methods: Iterable[ShippingMethod],
        weight: Any,
        cart_value: Any,
        destination: ShippingDestination,
    ) -> List[ShippingOption]:
        """
        Price every active method that has a matching rule.

        Returns:
            ShippingOption list, cheapest first
        """
        weight = Decimal(str(weight))
        cart_value = Decimal(str(cart_value))
        options: List[ShippingOption] = []

        for method in methods:
            if not method.is_active:
                continue

            rule = self.find_matching_rule(method.rules or [], weight, cart_value, destination)
            if rule is None:
                continue

            threshold = rule.free_shipping_threshold
            if threshold is not None and cart_value >= Decimal(str(threshold)):
                rate = ZERO
            else:
                rate = self.calculate_rate_by_type(method.type, rule, weight)

            options.append(ShippingOption(method=method, rule=rule, rate=rate, free_shipping=rate == 0))

        options.sort(key=lambda option: option.rate)
        return options


class ShippingService:
    """
    Shipping methods, rules and checkout options.

    Methods are scoped: platform-wide when seller_id is None, otherwise only
    that seller's methods.
    """

    def __init__(self, db: AsyncSession, engine: Optional[ShippingRuleEngine] = None):
        self.db = db
        self.engine = engine or ShippingRuleEngine()

    # ==================== Methods ====================

    async def find_all_shipping_methods(self, seller_id: Optional[str] = None) -> List[ShippingMethod]:
        """Active methods in scope, newest first, with their rules loaded."""
        scope = ShippingMethod.seller_id == seller_id if seller_id else ShippingMethod.seller_id.is_(None)
        result = await self.db.execute(
            select(ShippingMethod)
            .options(selectinload(ShippingMethod.rules))
            .where(ShippingMethod.is_active == True, scope)
            .order_by(ShippingMethod.created_at.desc(), ShippingMethod.id)
        )
        return list(result.scalars().all())

    async def find_shipping_method_by_id(self, method_id: str) -> ShippingMethod:
        result = await self.db.execute(
            select(ShippingMethod)
            .options(selectinload(ShippingMethod.rules))
            .where(ShippingMethod.id == method_id)
        )
        method = result.scalar_one_or_none()
        if not method:
            raise NotFoundError("Shipping method not found", details={"shipping_method_id": method_id})
        return method

    async def create_shipping_method(
        self,
        name: str,
        type: ShippingMethodType,
        description: Optional[str] = None,
        seller_id: Optional[str] = None,
        is_active: bool = True,
    ) -> ShippingMethod:
        method = ShippingMethod(
            name=name,
            description=description,
            type=ShippingMethodType(type),
            seller_id=seller_id,
            is_active=is_active,
        )
        self.db.add(method)
        await self.db.flush()
        logger.info(f"Created shipping method {method.id} ({method.type.value})")
        return method

    async def update_shipping_method(self, method_id: str, **changes: Any) -> ShippingMethod:
        method = await self.find_shipping_method_by_id(method_id)

        for key, value in changes.items():
            if key not in METHOD_FIELDS:
                raise ValidationError(f"Unknown shipping method field: {key}", field=key)
            if key == "type":
                value = ShippingMethodType(value)
            setattr(method, key, value)

        await self.db.flush()
        return method

    # ==================== Rules ====================

    @staticmethod
    def _validate_conditions(conditions: Any) -> Dict[str, Any]:
        if conditions is None:
            return {}
        if not isinstance(conditions, dict):
            raise ValidationError("Rule conditions must be an object", field="conditions")

        for key in ("weightRange", "cartValueRange"):
            bounds = conditions.get(key)
            if bounds is None:
                continue
            if not isinstance(bounds, dict):
                raise ValidationError(f"{key} must have min/max", field=f"conditions.{key}")
            low, high = bounds.get("min"), bounds.get("max")
            if low is not None and high is not None and Decimal(str(low)) > Decimal(str(high)):
                raise ValidationError(f"{key} min exceeds max", field=f"conditions.{key}")
        return conditions

    async def create_shipping_rule(
        self,
        shipping_method_id: str,
        name: str,
        rate: Any,
        priority: int = 0,
        conditions: Optional[Dict[str, Any]] = None,
        free_shipping_threshold: Any = None,
        estimated_days: Optional[int] = None,
        is_active: bool = True,
    ) -> ShippingRule:
        # Verify shipping method exists
        await self.find_shipping_method_by_id(shipping_method_id)

        rule = ShippingRule(
            shipping_method_id=shipping_method_id,
            name=name,
            priority=priority or 0,
            conditions=self._validate_conditions(conditions),
            rate=money(rate),
            free_shipping_threshold=money(free_shipping_threshold) if free_shipping_threshold is not None else None,
            estimated_days=estimated_days,
            is_active=is_active,
        )
        self.db.add(rule)
        await self.db.flush()
        return rule

    async def update_shipping_rule(self, rule_id: str, **changes: Any) -> ShippingRule:
        result = await self.db.execute(select(ShippingRule).where(ShippingRule.id == rule_id))
        rule = result.scalar_one_or_none()
        if not rule:
            raise NotFoundError("Shipping rule not found", details={"shipping_rule_id": rule_id})

        for key, value in changes.items():
            if key not in RULE_FIELDS:
                raise ValidationError(f"Unknown shipping rule field: {key}", field=key)
            if key == "rate":
                value = money(value)
            elif key == "free_shipping_threshold" and value is not None:
                value = money(value)
            elif key == "conditions":
                value = self._validate_conditions(value)
            setattr(rule, key, value)

        await self.db.flush()
        return rule

    # ==================== Checkout ====================

    async def calculate_shipping_rate(
        self,
        weight: Any,
        cart_value: Any,
        destination: ShippingDestination,
        seller_id: Optional[str] = None,
    ) -> List[ShippingOption]:
        """
        Shipping options for a cart weight (kg) and value.

        Returns:
            ShippingOption list, cheapest first
        """
        methods = await self.find_all_shipping_methods(seller_id)
        return self.engine.resolve(methods, weight, cart_value, destination)

    async def get_shipping_options(
        self,
        cart_items: List[CartItemForShipping],
        cart_value: Any,
        destination: ShippingDestination,
        seller_id: Optional[str] = None,
    ) -> List[ShippingOption]:
        """Options for a cart; items without a weight count as DEFAULT_ITEM_WEIGHT_KG each."""
        default_weight = Decimal(str(settings.DEFAULT_ITEM_WEIGHT_KG))
        total_weight = Decimal("0")
        for item in cart_items:
            unit_weight = Decimal(str(item.weight)) if item.weight else default_weight
            total_weight += unit_weight * item.quantity

        return await self.calculate_shipping_rate(total_weight, cart_value, destination, seller_id)
