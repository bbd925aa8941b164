"""
Pydantic models for the agent's HTTP API and the backend contracts.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Credential(BaseModel):
    """Cloud credentials stored for a profile."""

    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    region: str = ""
    expiration: Optional[datetime] = None  # None for long-lived credentials


class Module(BaseModel):
    """A unit of required training."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = ""
    name: str
    title: str = ""
    estimated_minutes: int = 0


class PolicyCheckRequest(BaseModel):
    """Body of POST /api/policies/check on the backend."""

    user_id: str
    action: str
    resource_type: str
    resource_details: dict[str, Any] = Field(default_factory=dict)


class PolicyDecision(BaseModel):
    """Backend answer to a policy check. 'action' is mandatory."""

    action: Literal["allow", "block"]
    reason: Optional[str] = None
    required_modules: list[Module] = Field(default_factory=list)
    message: str = ""

    @field_validator("required_modules", mode="before")
    @classmethod
    def _null_modules(cls, value):
        return [] if value is None else value


class AuditLogEntry(BaseModel):
    """
    Audit record sent to POST /api/audit/log.
    The backend assigns id and created_at on acceptance.
    """

    id: Optional[str] = None
    user_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: str
    status: Literal["success", "failure", "blocked"]
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


# --- Agent API requests and responses ---


class CredentialRequest(BaseModel):
    profile: str = Field(min_length=1)
    access_key_id: str = Field(min_length=1)
    secret_access_key: str = Field(min_length=1)
    session_token: Optional[str] = None
    region: str = ""


class ProfileInfo(BaseModel):
    profile: str
    region: str


class EncryptionSpec(BaseModel):
    type: str = ""
    kms_key_id: Optional[str] = None


class CreateBucketRequest(BaseModel):
    bucket_name: str = Field(min_length=1)
    region: str = ""
    encryption: EncryptionSpec = Field(default_factory=EncryptionSpec)
    versioning_enabled: bool = False
    profile: str = ""


class CreateBucketResult(BaseModel):
    bucket_name: str
    region: str
    location: str
    created_at: datetime


class CallerIdentity(BaseModel):
    account: str
    arn: str
    user_id: str
