from integration_engine.schemas.integration import (
    IntegrationCreate,
    IntegrationUpdate,
    IntegrationResponse,
    IntegrationLogResponse,
    IntegrationLogPage,
    TestConnectionResponse,
    ProviderMetadata,
)
