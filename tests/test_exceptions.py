"""
Tests for the integration error hierarchy.
"""
from integration_engine.core.exceptions import (
    AuthenticationError,
    IntegrationError,
    NotSupportedError,
    ProviderTimeoutError,
    UpstreamError,
    ValidationError,
)


class TestErrorDetails:

    def test_caller_details_not_mutated(self):
        shared = {"order_id": "order-1"}

        upstream = UpstreamError("FedEx 503", provider="fedex", status_code=503, details=shared)
        auth = AuthenticationError("bad key", provider="dhl", details=shared)
        invalid = ValidationError("missing phone", field="to_address.phone", details=shared)
        unsupported = NotSupportedError("royal_mail", "schedule_pickup", details=shared)

        assert shared == {"order_id": "order-1"}
        assert upstream.details == {"order_id": "order-1", "provider": "fedex", "status_code": 503}
        assert auth.details == {"order_id": "order-1", "provider": "dhl"}
        assert invalid.details == {"order_id": "order-1", "field": "to_address.phone"}
        assert unsupported.details["operation"] == "schedule_pickup"

    def test_details_not_shared_between_errors(self):
        first = ValidationError("a", field="one")
        second = ValidationError("b", field="two")

        assert first.details == {"field": "one"}
        assert second.details == {"field": "two"}

    def test_to_dict(self):
        error = ProviderTimeoutError("dhl timed out after 30s", provider="dhl")

        data = error.to_dict()

        assert isinstance(error, UpstreamError)
        assert data["error_type"] == "ProviderTimeoutError"
        assert data["code"] == "PROVIDER_TIMEOUT"
        assert data["severity"] == "P2"
        assert data["details"]["provider"] == "dhl"

    def test_defaults(self):
        error = IntegrationError("boom")

        assert error.code == "INTEGRATION_ERROR"
        assert error.details == {}
        assert str(error) == "boom"
