"""
Pydantic Schemas for Integration Configs v1.0.0

Request/response schemas for the credential admin surface.

- Credentials are accepted in plain form and encrypted before storage
- Responses only ever carry masked credentials
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator

from integration_engine.models.integration import IntegrationCategory, IntegrationTestStatus

PROVIDER_ID_PATTERN = r"^[a-z][a-z0-9_]{1,49}$"


# ==================== Request Schemas ====================

class IntegrationCreate(BaseModel):
    """Schema for configuring a new provider."""
    category: IntegrationCategory
    provider: str = Field(..., pattern=PROVIDER_ID_PATTERN, description="Provider identifier (e.g. fedex, avalara)")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: bool = Field(default=False)
    is_test_mode: bool = Field(default=True, description="Use the vendor sandbox")
    credentials: Dict[str, Any] = Field(..., description="API credentials (encrypted at rest)")
    settings: Dict[str, Any] = Field(default_factory=dict, description="Non-sensitive settings")
    priority: int = Field(default=0, ge=0, le=1000, description="Higher = preferred")

    @field_validator("display_name")
    @classmethod
    def strip_display_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("display_name cannot be blank")
        return v


class IntegrationUpdate(BaseModel):
    """Schema for updating a provider. Credentials are merged into the stored set."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    is_test_mode: Optional[bool] = None
    credentials: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    priority: Optional[int] = Field(None, ge=0, le=1000)


# ==================== Response Schemas ====================

class IntegrationResponse(BaseModel):
    """Integration with masked credentials."""
    id: str
    category: IntegrationCategory
    provider: str
    display_name: str
    description: Optional[str] = None
    is_active: bool
    is_test_mode: bool
    credentials: Dict[str, Any] = Field(default_factory=dict)
    settings: Optional[Dict[str, Any]] = None
    webhook_url: Optional[str] = None
    priority: int
    test_status: Optional[IntegrationTestStatus] = None
    test_message: Optional[str] = None
    last_tested_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class IntegrationLogResponse(BaseModel):
    id: str
    integration_id: str
    action: str
    provider: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class IntegrationLogPage(BaseModel):
    logs: List[IntegrationLogResponse]
    total: int
    limit: int
    offset: int


class TestConnectionResponse(BaseModel):
    __test__ = False  # not a pytest test class

    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None

    model_config = {"from_attributes": True}


class ProviderMetadata(BaseModel):
    """Catalog entry describing a supported provider."""
    provider: str
    category: IntegrationCategory
    display_name: str
    description: str
    required_credentials: List[str]
    optional_credentials: List[str] = Field(default_factory=list)
    documentation_url: Optional[str] = None
