"""
Integration Admin Service v1.0.0

Credential administration for third-party providers:
- Create/update/delete IntegrationConfig rows with encrypted credentials
- Required-credential validation against the provider catalog
- Live connection tests through the registered adapters
- Masked responses only; plaintext credentials are internal
- Refreshes registered provider factories after every change
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Type

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from integration_engine.core.exceptions import (
    ConflictError,
    DecryptionError,
    NotFoundError,
    ValidationError,
)
from integration_engine.models.integration import (
    IntegrationCategory,
    IntegrationConfig,
    IntegrationLog,
    IntegrationTestStatus,
)
from integration_engine.modules.provider import BaseProvider, TestConnectionResult
from integration_engine.modules.shipping.carriers import get_carrier_class
from integration_engine.modules.tax.providers import get_tax_provider_class
from integration_engine.schemas.integration import (
    IntegrationCreate,
    IntegrationLogPage,
    IntegrationLogResponse,
    IntegrationResponse,
    IntegrationUpdate,
    ProviderMetadata,
    TestConnectionResponse,
)
from integration_engine.services.encryption import SecretCipher, get_cipher
from integration_engine.services.provider_factory import BaseProviderFactory

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/integrations/{category}/{provider}"


def _catalog(*entries: ProviderMetadata) -> Dict[str, ProviderMetadata]:
    return {entry.provider: entry for entry in entries}


PROVIDER_METADATA: Dict[str, ProviderMetadata] = _catalog(
    # Shipping
    ProviderMetadata(
        provider="royal_mail",
        category=IntegrationCategory.SHIPPING,
        display_name="Royal Mail",
        description="UK domestic and international postal service",
        required_credentials=["clientId", "clientSecret", "accountNumber"],
        optional_credentials=["postingLocation"],
        documentation_url="https://developer.royalmail.net/",
    ),
    ProviderMetadata(
        provider="fedex",
        category=IntegrationCategory.SHIPPING,
        display_name="FedEx",
        description="Global courier delivery services",
        required_credentials=["apiKey", "secretKey", "accountNumber"],
        optional_credentials=["meterNumber"],
        documentation_url="https://developer.fedex.com/",
    ),
    ProviderMetadata(
        provider="dhl",
        category=IntegrationCategory.SHIPPING,
        display_name="DHL Express",
        description="International express shipping",
        required_credentials=["apiKey", "accountNumber"],
        optional_credentials=["siteId", "password"],
        documentation_url="https://developer.dhl.com/",
    ),
    # Tax
    ProviderMetadata(
        provider="avalara",
        category=IntegrationCategory.TAX,
        display_name="Avalara AvaTax",
        description="Enterprise tax calculation and compliance",
        required_credentials=["accountId", "licenseKey", "companyCode"],
        documentation_url="https://developer.avalara.com/",
    ),
    ProviderMetadata(
        provider="taxjar",
        category=IntegrationCategory.TAX,
        display_name="TaxJar",
        description="Sales tax calculation and reporting",
        required_credentials=["apiToken"],
        documentation_url="https://developers.taxjar.com/",
    ),
    # Payment
    ProviderMetadata(
        provider="stripe",
        category=IntegrationCategory.PAYMENT,
        display_name="Stripe",
        description="Online payment processing",
        required_credentials=["publishableKey", "secretKey"],
        optional_credentials=["webhookSecret"],
        documentation_url="https://stripe.com/docs/api",
    ),
    # Email
    ProviderMetadata(
        provider="sendgrid",
        category=IntegrationCategory.EMAIL,
        display_name="SendGrid",
        description="Email delivery service",
        required_credentials=["apiKey"],
        optional_credentials=["fromEmail", "fromName"],
        documentation_url="https://docs.sendgrid.com/",
    ),
)


def get_adapter_class(category: IntegrationCategory, provider: str) -> Optional[Type[BaseProvider]]:
    """Registered adapter class for a category/provider pair, if any."""
    if category == IntegrationCategory.SHIPPING:
        return get_carrier_class(provider)
    if category == IntegrationCategory.TAX:
        return get_tax_provider_class(provider)
    return None


class IntegrationService:
    """
    Admin operations over IntegrationConfig rows.

    Args:
        db: Async session; mutations are committed here so refreshed
            factories see them
        cipher: SecretCipher for credential blobs
        factories: Provider factories to refresh after changes
        transport: httpx transport for connection tests (tests)
    """

    def __init__(
        self,
        db: AsyncSession,
        cipher: Optional[SecretCipher] = None,
        factories: Optional[Iterable[BaseProviderFactory]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.cipher = cipher or get_cipher()
        self.factories: List[BaseProviderFactory] = list(factories or [])
        self._transport = transport

    # ==================== Helpers ====================

    async def _get(self, integration_id: str) -> IntegrationConfig:
        result = await self.db.execute(select(IntegrationConfig).where(IntegrationConfig.id == integration_id))
        config = result.scalar_one_or_none()
        if not config:
            raise NotFoundError("Integration not found", details={"integration_id": integration_id})
        return config

    async def _get_by_provider(self, category: IntegrationCategory, provider: str) -> Optional[IntegrationConfig]:
        result = await self.db.execute(
            select(IntegrationConfig).where(
                IntegrationConfig.category == IntegrationCategory(category),
                IntegrationConfig.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    def _decrypt_credentials(self, config: IntegrationConfig) -> Dict[str, Any]:
        """Stored credentials, or {} (logged) when they cannot be decrypted."""
        try:
            return self.cipher.decrypt_json(config.credentials or "")
        except DecryptionError:
            logger.error(f"Failed to decrypt credentials for integration {config.id}")
            return {}

    @staticmethod
    def validate_credentials(provider: str, credentials: Dict[str, Any]) -> None:
        """
        Check catalog-required credentials are present and non-blank.

        Unknown providers are not validated.
        """
        metadata = PROVIDER_METADATA.get(provider)
        if not metadata:
            return

        missing = [
            name for name in metadata.required_credentials
            if not isinstance(credentials.get(name), str) or not credentials[name].strip()
        ]
        if missing:
            raise ValidationError(
                f"Missing required credentials for {provider}: {', '.join(missing)}",
                field="credentials",
                details={"missing": missing},
            )

    def _to_response(self, config: IntegrationConfig) -> IntegrationResponse:
        return IntegrationResponse(
            id=config.id,
            category=config.category,
            provider=config.provider,
            display_name=config.display_name,
            description=config.description,
            is_active=config.is_active,
            is_test_mode=config.is_test_mode,
            credentials=self.cipher.mask_credentials(self._decrypt_credentials(config)),
            settings=config.settings,
            webhook_url=config.webhook_url,
            priority=config.priority or 0,
            test_status=config.test_status,
            test_message=config.test_message,
            last_tested_at=config.last_tested_at,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )

    async def _log_action(
        self,
        integration_id: str,
        action: str,
        provider: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Append an audit row inside a savepoint.

        Pending config changes are flushed first so their errors still
        propagate; a failing audit insert only rolls back its savepoint.
        """
        await self.db.flush()
        try:
            async with self.db.begin_nested():
                self.db.add(IntegrationLog(
                    integration_id=integration_id,
                    action=action,
                    provider=provider,
                    details=details,
                ))
        except Exception as e:
            logger.error(f"Failed to log integration action {action}: {type(e).__name__}: {e}")

    async def _refresh_factories(self, category: IntegrationCategory) -> None:
        for factory in self.factories:
            if factory.category == category:
                await factory.refresh_providers()

    # ==================== CRUD ====================

    async def create(self, data: IntegrationCreate) -> IntegrationResponse:
        """
        Configure a provider.

        Raises:
            ConflictError: provider already configured for the category
            ValidationError: required credentials missing
        """
        if await self._get_by_provider(data.category, data.provider):
            raise ConflictError(
                f"Integration for {data.provider} in {data.category.value} already exists",
                details={"category": data.category.value, "provider": data.provider},
            )

        self.validate_credentials(data.provider, data.credentials)

        config = IntegrationConfig(
            category=data.category,
            provider=data.provider,
            display_name=data.display_name,
            description=data.description,
            is_active=data.is_active,
            is_test_mode=data.is_test_mode,
            credentials=self.cipher.encrypt_json(data.credentials),
            settings=data.settings or {},
            webhook_url=WEBHOOK_PATH.format(category=data.category.value.lower(), provider=data.provider),
            webhook_secret=self.cipher.generate_webhook_secret(),
            priority=data.priority,
        )
        self.db.add(config)
        await self.db.flush()

        await self._log_action(config.id, "CONFIG_CHANGE", config.provider, {
            "action": "CREATED",
            "display_name": config.display_name,
        })
        await self.db.commit()
        await self.db.refresh(config)

        logger.info(f"Created integration {config.provider} ({config.category.value})")
        await self._refresh_factories(config.category)
        return self._to_response(config)

    async def find_all(self, category: Optional[IntegrationCategory] = None) -> List[IntegrationResponse]:
        query = select(IntegrationConfig)
        if category:
            query = query.where(IntegrationConfig.category == IntegrationCategory(category))
        query = query.order_by(
            IntegrationConfig.category.asc(),
            IntegrationConfig.priority.desc(),
            IntegrationConfig.display_name.asc(),
        )
        result = await self.db.execute(query)
        return [self._to_response(config) for config in result.scalars().all()]

    async def find_by_id(self, integration_id: str) -> IntegrationResponse:
        return self._to_response(await self._get(integration_id))

    async def find_by_provider(self, category: IntegrationCategory, provider: str) -> Optional[IntegrationResponse]:
        config = await self._get_by_provider(category, provider)
        return self._to_response(config) if config else None

    async def get_active_integration(self, category: IntegrationCategory) -> Optional[IntegrationResponse]:
        """Highest-priority active integration in a category."""
        result = await self.db.execute(
            select(IntegrationConfig)
            .where(
                IntegrationConfig.category == IntegrationCategory(category),
                IntegrationConfig.is_active == True,
            )
            .order_by(IntegrationConfig.priority.desc())
            .limit(1)
        )
        config = result.scalars().first()
        return self._to_response(config) if config else None

    async def update(self, integration_id: str, data: IntegrationUpdate) -> IntegrationResponse:
        """Update fields; supplied credentials are merged over the stored ones."""
        config = await self._get(integration_id)
        changes = data.model_dump(exclude_unset=True)

        credentials = changes.pop("credentials", None)
        if credentials:
            merged = {**self._decrypt_credentials(config), **credentials}
            self.validate_credentials(config.provider, merged)
            config.credentials = self.cipher.encrypt_json(merged)
            changes_logged = [*changes, "credentials"]
        else:
            changes_logged = list(changes)

        for key, value in changes.items():
            setattr(config, key, value)

        await self._log_action(config.id, "CONFIG_CHANGE", config.provider, {
            "action": "UPDATED",
            "fields": changes_logged,
        })
        await self.db.commit()
        await self.db.refresh(config)

        await self._refresh_factories(config.category)
        return self._to_response(config)

    async def set_active(self, integration_id: str, active: bool) -> IntegrationResponse:
        config = await self._get(integration_id)
        config.is_active = active

        await self._log_action(config.id, "CONFIG_CHANGE", config.provider, {
            "action": "ACTIVATED" if active else "DEACTIVATED",
        })
        await self.db.commit()
        await self.db.refresh(config)

        logger.info(f"Integration {config.provider} ({config.category.value}) {'activated' if active else 'deactivated'}")
        await self._refresh_factories(config.category)
        return self._to_response(config)

    async def delete(self, integration_id: str) -> None:
        config = await self._get(integration_id)
        category = config.category

        await self.db.delete(config)
        await self.db.commit()

        logger.info(f"Deleted integration {config.provider} ({category.value})")
        await self._refresh_factories(category)

    # ==================== Connection Tests ====================

    async def _run_test(
        self,
        config: IntegrationConfig,
        credentials: Dict[str, Any],
    ) -> TestConnectionResult:
        adapter_class = get_adapter_class(config.category, config.provider)
        if adapter_class is None:
            return TestConnectionResult(
                success=False,
                message=f"No connection test available for {config.provider}",
            )

        adapter = adapter_class(
            credentials=credentials,
            is_test_mode=config.is_test_mode,
            options=config.settings or {},
            transport=self._transport,
        )
        return await adapter.test_connection()

    async def test_connection(
        self,
        integration_id: str,
        test_credentials: Optional[Dict[str, Any]] = None,
    ) -> TestConnectionResponse:
        """
        Run a live connection test with stored or supplied credentials.

        Records the outcome on the integration and in the audit log.
        """
        config = await self._get(integration_id)
        started = time.monotonic()

        if test_credentials:
            result = await self._run_test(config, test_credentials)
        else:
            try:
                credentials = self.cipher.decrypt_json(config.credentials or "")
            except DecryptionError as e:
                result = TestConnectionResult(success=False, message=f"Connection test failed: {e.message}")
            else:
                result = await self._run_test(config, credentials)

        duration_ms = result.duration_ms
        if duration_ms is None:
            duration_ms = int((time.monotonic() - started) * 1000)

        config.last_tested_at = datetime.now(timezone.utc)
        config.test_status = IntegrationTestStatus.SUCCESS if result.success else IntegrationTestStatus.FAILED
        config.test_message = result.message

        await self._log_action(config.id, "TEST_CONNECTION", config.provider, {
            "success": result.success,
            "duration_ms": duration_ms,
        })
        await self.db.commit()

        return TestConnectionResponse(
            success=result.success,
            message=result.message,
            details=result.details,
            duration_ms=duration_ms,
        )

    # ==================== Audit Log ====================

    async def get_logs(
        self,
        integration_id: str,
        limit: int = 50,
        offset: int = 0,
        action: Optional[str] = None,
    ) -> IntegrationLogPage:
        conditions = [IntegrationLog.integration_id == integration_id]
        if action:
            conditions.append(IntegrationLog.action == action)

        result = await self.db.execute(
            select(IntegrationLog)
            .where(*conditions)
            .order_by(IntegrationLog.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        logs = result.scalars().all()

        total_result = await self.db.execute(select(func.count(IntegrationLog.id)).where(*conditions))
        total = total_result.scalar() or 0

        return IntegrationLogPage(
            logs=[IntegrationLogResponse.model_validate(log) for log in logs],
            total=total,
            limit=limit,
            offset=offset,
        )

    # ==================== Catalog ====================

    def get_provider_metadata(self, provider: str) -> Optional[ProviderMetadata]:
        return PROVIDER_METADATA.get(provider)

    def get_available_providers(self, category: IntegrationCategory) -> List[ProviderMetadata]:
        category = IntegrationCategory(category)
        return [metadata for metadata in PROVIDER_METADATA.values() if metadata.category == category]

    # ==================== Internal ====================

    async def get_decrypted_credentials(self, id_or_category: Any, provider: Optional[str] = None) -> Dict[str, Any]:
        """
        Plaintext credentials for internal callers only.

        Looks up by id, or by (category, provider) when provider is given.

        Raises:
            NotFoundError: no such integration
            ValidationError: integration is not active
            DecryptionError: stored credentials cannot be decrypted
        """
        if provider:
            config = await self._get_by_provider(IntegrationCategory(id_or_category), provider)
            if not config:
                raise NotFoundError(
                    "Integration not found",
                    details={"category": str(id_or_category), "provider": provider},
                )
        else:
            config = await self._get(id_or_category)

        if not config.is_active:
            raise ValidationError("Integration is not active", details={"integration_id": config.id})

        return self.cipher.decrypt_json(config.credentials or "")
