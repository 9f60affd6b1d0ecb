from integration_engine.models.integration import (
    IntegrationCategory,
    IntegrationConfig,
    IntegrationLog,
    IntegrationTestStatus,
)
from integration_engine.models.shipping import ShippingMethod, ShippingMethodType, ShippingRule
