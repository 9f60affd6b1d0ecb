"""
Provider Factory v1.0.0

Shared machinery for the courier and tax factories:
- Loads IntegrationConfig rows for one category, decrypts credentials in memory
- Instantiates adapters through the registration map
- Tracks active/test-mode/priority per provider
- Bounds every adapter call with PROVIDER_CALL_TIMEOUT_SECONDS
- Appends IntegrationLog rows for provider activity

Usage:
    factory = CourierFactory()
    await factory.load_providers()
    provider = factory.get_default_provider()
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

import httpx
from sqlalchemy import func, select

from integration_engine.core.config import settings
from integration_engine.core.database import get_db_session
from integration_engine.core.exceptions import DecryptionError, NotFoundError, ProviderTimeoutError
from integration_engine.models.integration import IntegrationCategory, IntegrationConfig, IntegrationLog
from integration_engine.modules.provider import BaseProvider, TestConnectionResult
from integration_engine.services.encryption import SecretCipher, get_cipher

logger = logging.getLogger(__name__)


@dataclass
class ProviderState:
    """Config flags captured for a loaded adapter."""
    integration_id: str
    is_active: bool
    is_test_mode: bool
    priority: int


class BaseProviderFactory(ABC):
    """
    Loads and caches adapters for one integration category.

    Args:
        session_factory: Async context manager yielding an AsyncSession
        cipher: SecretCipher for credential blobs (process-wide one by default)
        call_timeout: Upper bound in seconds for one adapter call
        transport: httpx transport handed to every adapter (tests)
    """

    category: IntegrationCategory
    kind: str = "provider"
    # IntegrationLog action counted by get_provider_stats
    stats_action: str = ""

    def __init__(
        self,
        session_factory: Callable[[], Any] = get_db_session,
        cipher: Optional[SecretCipher] = None,
        call_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._session_factory = session_factory
        self._cipher = cipher or get_cipher()
        self._call_timeout = call_timeout or settings.PROVIDER_CALL_TIMEOUT_SECONDS
        self._transport = transport
        self._providers: Dict[str, BaseProvider] = {}
        self._states: Dict[str, ProviderState] = {}

    @abstractmethod
    def _resolve_class(self, provider_id: str) -> Optional[Type[BaseProvider]]:
        """Registered adapter class for a provider id, if any."""
        pass

    # ==================== Loading ====================

    def _decrypt_credentials(self, config: IntegrationConfig) -> Dict[str, Any]:
        try:
            return self._cipher.decrypt_json(config.credentials or "")
        except DecryptionError as e:
            logger.error(f"Failed to decrypt credentials for {self.kind} {config.provider}: {e.code}")
            return {}

    async def load_providers(self) -> None:
        """
        Rebuild the adapter cache from the database.

        Unknown provider ids and adapters missing required credentials are
        skipped. The previous cache is replaced wholesale.
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(IntegrationConfig)
                    .where(IntegrationConfig.category == self.category)
                    .order_by(IntegrationConfig.priority.desc())
                )
                configs = list(result.scalars().all())
        except Exception as e:
            logger.error(f"Failed to load {self.kind} providers: {type(e).__name__}: {e}")
            self._providers, self._states = {}, {}
            return

        providers: Dict[str, BaseProvider] = {}
        states: Dict[str, ProviderState] = {}

        for config in configs:
            provider_class = self._resolve_class(config.provider)
            if provider_class is None:
                logger.warning(f"Unknown {self.kind} provider type: {config.provider}")
                continue

            try:
                provider = provider_class(
                    credentials=self._decrypt_credentials(config),
                    is_test_mode=config.is_test_mode,
                    options=config.settings or {},
                    transport=self._transport,
                )
            except Exception as e:
                logger.error(f"Failed to load {self.kind} provider {config.provider}: {e}")
                continue

            if not provider.is_configured():
                logger.warning(
                    f"Skipping {self.kind} provider {config.provider}: "
                    f"missing {', '.join(provider.missing_credentials())}"
                )
                continue

            providers[config.provider] = provider
            states[config.provider] = ProviderState(
                integration_id=config.id,
                is_active=bool(config.is_active),
                is_test_mode=bool(config.is_test_mode),
                priority=config.priority or 0,
            )
            mode = "test" if config.is_test_mode else "production"
            logger.info(f"Loaded {self.kind} provider: {config.provider} ({mode})")

        self._providers, self._states = providers, states
        logger.info(f"Loaded {len(providers)} {self.kind} providers")

    async def refresh_providers(self) -> None:
        await self.load_providers()

    # ==================== Lookup ====================

    def get_provider(self, provider_name: str) -> Optional[BaseProvider]:
        """Loaded adapter for an active config, else None."""
        state = self._states.get(provider_name)
        if not state or not state.is_active:
            return None
        return self._providers.get(provider_name)

    def get_active_providers(self) -> List[BaseProvider]:
        """Active adapters, highest priority first; ties keep load order."""
        names = [name for name, state in self._states.items() if state.is_active]
        names.sort(key=lambda name: self._states[name].priority, reverse=True)
        return [self._providers[name] for name in names]

    def get_available_provider_names(self) -> List[str]:
        return [provider.provider_id for provider in self.get_active_providers()]

    def get_default_provider(self) -> Optional[BaseProvider]:
        active = self.get_active_providers()
        return active[0] if active else None

    def get_configured_providers(self) -> List[Dict[str, Any]]:
        """Every loaded adapter with its flags, active or not."""
        return [
            {
                "provider": name,
                "name": provider.provider_name,
                "is_active": self._states[name].is_active,
                "is_test_mode": self._states[name].is_test_mode,
                "priority": self._states[name].priority,
            }
            for name, provider in self._providers.items()
        ]

    def _require_provider(self, provider_name: str) -> BaseProvider:
        provider = self.get_provider(provider_name)
        if provider is None:
            raise NotFoundError(
                f"Provider {provider_name} not found or not active",
                details={"provider": provider_name, "category": self.category.value},
            )
        return provider

    # ==================== Calls ====================

    async def _call(self, provider: BaseProvider, operation: str, awaitable: Awaitable[Any]) -> Any:
        """Await one adapter call within the configured time bound."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._call_timeout)
        except asyncio.TimeoutError:
            logger.error(f"{provider.provider_id} {operation} exceeded {self._call_timeout}s")
            raise ProviderTimeoutError(
                f"{provider.provider_name} {operation} timed out after {self._call_timeout}s",
                provider=provider.provider_id,
            )

    async def _audited(
        self,
        provider: BaseProvider,
        action: str,
        awaitable: Awaitable[Any],
        reference: Optional[str] = None,
        summarize: Optional[Callable[[Any], Dict[str, Any]]] = None,
    ) -> Any:
        """
        Run a state-changing call and append one IntegrationLog row.

        Failures are logged as ``{action}_FAILED`` and re-raised.
        """
        started = time.monotonic()
        try:
            result = await self._call(provider, action, awaitable)
        except Exception as e:
            await self._log_api_call(provider.provider_id, f"{action}_FAILED", reference, {
                "success": False,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "error": str(e),
            })
            raise

        details = {"success": True, "duration_ms": int((time.monotonic() - started) * 1000)}
        if summarize:
            details.update(summarize(result))
        await self._log_api_call(provider.provider_id, action, reference, details)
        return result

    async def _log_api_call(
        self,
        provider_name: str,
        action: str,
        reference: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an IntegrationLog row. Never raises."""
        try:
            async with self._session_factory() as db:
                state = self._states.get(provider_name)
                integration_id = state.integration_id if state else None
                if integration_id is None:
                    result = await db.execute(
                        select(IntegrationConfig.id).where(
                            IntegrationConfig.category == self.category,
                            IntegrationConfig.provider == provider_name,
                        )
                    )
                    integration_id = result.scalar_one_or_none()
                if integration_id is None:
                    return

                db.add(IntegrationLog(
                    integration_id=integration_id,
                    action=action,
                    provider=provider_name,
                    details={"reference": reference, **(details or {})},
                ))
        except Exception as e:
            logger.error(f"Failed to log {action} for {provider_name}: {type(e).__name__}: {e}")

    # ==================== Diagnostics ====================

    async def test_connection(self, provider_name: str) -> TestConnectionResult:
        """
        Test a loaded provider, active or not.

        Raises:
            NotFoundError: provider is not loaded
        """
        provider = self._providers.get(provider_name)
        if provider is None:
            raise NotFoundError(
                f"Provider {provider_name} not found",
                details={"provider": provider_name, "category": self.category.value},
            )

        try:
            result = await self._call(provider, "test_connection", provider.test_connection())
        except ProviderTimeoutError as e:
            result = TestConnectionResult(success=False, message=e.message)

        await self._log_api_call(provider_name, "TEST_CONNECTION", details={
            "success": result.success,
            "message": result.message,
            "duration_ms": result.duration_ms,
        })
        return result

    async def get_provider_stats(self) -> List[Dict[str, Any]]:
        """Per-provider activity counts from the audit log."""
        counts: Dict[str, Any] = {}
        if self._providers and self.stats_action:
            try:
                async with self._session_factory() as db:
                    result = await db.execute(
                        select(
                            IntegrationLog.provider,
                            func.count(IntegrationLog.id),
                            func.max(IntegrationLog.created_at),
                        )
                        .where(
                            IntegrationLog.action == self.stats_action,
                            IntegrationLog.provider.in_(list(self._providers)),
                        )
                        .group_by(IntegrationLog.provider)
                    )
                    counts = {row[0]: (row[1], row[2]) for row in result.all()}
            except Exception as e:
                logger.error(f"Failed to read {self.kind} provider stats: {e}")

        stats = []
        for name in self._providers:
            state = self._states[name]
            total, last_used = counts.get(name, (0, None))
            stats.append({
                "provider": name,
                "is_active": state.is_active,
                "is_test_mode": state.is_test_mode,
                "priority": state.priority,
                "total_calls": total,
                "last_used": last_used,
            })
        return stats
