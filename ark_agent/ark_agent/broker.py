"""
Credential broker: credential CRUD and policy-gated provider operations.
"""

import asyncio
from typing import Callable

from ark_agent.audit import AuditEmitter
from ark_agent.config import AgentSettings
from ark_agent.errors import NotFoundError, ProviderError, TrainingRequiredError, ValidationError
from ark_agent.gate import PolicyGateClient
from ark_agent.logging import get_logger
from ark_agent.provider import (
    DEFAULT_REGION,
    ENCRYPTION_TYPES,
    AWSClient,
    CreateBucketInput,
    bucket_name_problems,
)
from ark_agent.schemas import (
    AuditLogEntry,
    CallerIdentity,
    CreateBucketRequest,
    CreateBucketResult,
    Credential,
    CredentialRequest,
    ProfileInfo,
)
from ark_agent.storage import Storage

logger = get_logger("CredentialBroker")

CREATE_BUCKET_ACTION = "s3:CreateBucket"
BUCKET_RESOURCE = "s3:bucket"
DEFAULT_PROFILE = "default"
IDENTITY_CACHE_TTL = 15 * 60


def _identity_cache_key(profile: str) -> str:
    return f"identity:{profile}"


def validate_bucket_request(request: CreateBucketRequest):
    """
    Check the request shape before anything else happens.

    Raises:
        ValidationError: Listing every problem found
    """
    problems = bucket_name_problems(request.bucket_name)
    if problems:
        raise ValidationError(
            f"invalid bucket name '{request.bucket_name}': " + "; ".join(problems)
        )

    enc_type = request.encryption.type or "AES256"
    if enc_type not in ENCRYPTION_TYPES:
        raise ValidationError(f"encryption must be 'AES256' or 'aws:kms', got: {enc_type}")
    if enc_type == "aws:kms" and not request.encryption.kms_key_id:
        raise ValidationError("kms_key_id is required when using aws:kms encryption")


class CredentialBroker:
    """
    Mediates every request that touches stored credentials.

    Store and provider calls are blocking and run in worker threads. The
    broker never keeps credentials beyond the call that loaded them.
    """

    def __init__(
        self,
        settings: AgentSettings,
        store: Storage,
        gate: PolicyGateClient,
        auditor: AuditEmitter,
        client_factory: Callable[[Credential, str], AWSClient] = AWSClient,
    ):
        self.settings = settings
        self.store = store
        self.gate = gate
        self.auditor = auditor
        self.client_factory = client_factory

    async def set_credential(self, request: CredentialRequest) -> str:
        """Store long-lived credentials for request.profile; returns the profile."""
        credential = Credential(
            access_key_id=request.access_key_id,
            secret_access_key=request.secret_access_key,
            session_token=request.session_token or None,
            region=request.region or DEFAULT_REGION,
        )
        await asyncio.to_thread(self.store.set_credential, request.profile, credential)
        await asyncio.to_thread(self.store.delete_cache, _identity_cache_key(request.profile))
        logger.info(f"Credentials stored for profile {request.profile} ({credential.region})")
        return request.profile

    async def list_credentials(self) -> list[ProfileInfo]:
        profiles = await asyncio.to_thread(self.store.list_credentials)
        return [
            ProfileInfo(profile=name, region=cred.region)
            for name, cred in sorted(profiles.items())
        ]

    async def delete_credential(self, profile: str):
        """
        Raises:
            NotFoundError: If the profile has no stored credentials
        """
        # The store deletes unconditionally, so existence is checked here
        await asyncio.to_thread(self.store.get_credential, profile)
        await asyncio.to_thread(self.store.delete_credential, profile)
        await asyncio.to_thread(self.store.delete_cache, _identity_cache_key(profile))
        logger.info(f"Credentials deleted for profile {profile}")

    async def validate_credential(self, profile: str) -> tuple[CallerIdentity, bool]:
        """
        Resolve the caller identity of a profile's credentials via STS.
        Results are cached for IDENTITY_CACHE_TTL seconds.

        Returns:
            tuple: (identity, served_from_cache)

        Raises:
            NotFoundError: If the profile is unknown
            ProviderError: If the credentials are rejected
        """
        credential = await asyncio.to_thread(self.store.get_credential, profile)
        key = _identity_cache_key(profile)
        try:
            cached = await asyncio.to_thread(self.store.get_cache, key)
        except NotFoundError:
            pass
        else:
            return CallerIdentity.model_validate(cached), True

        client = self.client_factory(credential, credential.region)
        identity = await asyncio.to_thread(client.caller_identity)
        await asyncio.to_thread(self.store.set_cache, key, identity.model_dump(), IDENTITY_CACHE_TTL)
        return identity, False

    async def create_bucket(self, request: CreateBucketRequest) -> CreateBucketResult:
        """
        Create an S3 bucket after the training gate allows it.

        Raises:
            ValidationError: Bad bucket name or encryption settings
            NotFoundError: No credentials for the profile
            TrainingRequiredError: The policy gate blocked the action
            ProviderError: The AWS calls failed
        """
        validate_bucket_request(request)

        profile = request.profile or DEFAULT_PROFILE
        try:
            credential = await asyncio.to_thread(self.store.get_credential, profile)
        except NotFoundError:
            raise NotFoundError(f"Credentials not found for profile: {profile}") from None

        region = request.region or credential.region or DEFAULT_REGION
        encryption = request.encryption.type or "AES256"
        user_id = self.settings.user_id

        allowed, required_modules = await self.gate.check(
            user_id,
            CREATE_BUCKET_ACTION,
            BUCKET_RESOURCE,
            {"bucket_name": request.bucket_name, "region": region},
        )

        if not allowed:
            logger.info(
                f"Operation blocked by training gate: user={user_id} "
                f"action={CREATE_BUCKET_ACTION} bucket={request.bucket_name}"
            )
            self.auditor.emit(
                AuditLogEntry(
                    user_id=user_id,
                    action=CREATE_BUCKET_ACTION,
                    resource_type=BUCKET_RESOURCE,
                    resource_id=request.bucket_name,
                    status="blocked",
                    details={
                        "region": region,
                        "required_modules": [m.model_dump() for m in required_modules],
                    },
                )
            )
            raise TrainingRequiredError(required_modules)

        details = {
            "region": region,
            "encryption": encryption,
            "versioning": request.versioning_enabled,
        }
        spec = CreateBucketInput(
            bucket_name=request.bucket_name,
            region=region,
            encryption_type=encryption,
            kms_key_id=request.encryption.kms_key_id,
            versioning_enabled=request.versioning_enabled,
        )

        logger.info(
            f"Creating S3 bucket {spec.bucket_name} in {region} "
            f"(encryption={encryption}, versioning={spec.versioning_enabled})"
        )
        try:
            client = self.client_factory(credential, region)
            result = await asyncio.to_thread(client.create_bucket, spec)
        except ProviderError as e:
            logger.error(f"Failed to create bucket {spec.bucket_name}: {e}")
            self.auditor.emit(
                AuditLogEntry(
                    user_id=user_id,
                    action=CREATE_BUCKET_ACTION,
                    resource_type=BUCKET_RESOURCE,
                    resource_id=request.bucket_name,
                    status="failure",
                    details={**details, "error": str(e)},
                )
            )
            raise

        self.auditor.emit(
            AuditLogEntry(
                user_id=user_id,
                action=CREATE_BUCKET_ACTION,
                resource_type=BUCKET_RESOURCE,
                resource_id=result.bucket_name,
                status="success",
                details={**details, "region": result.region},
            )
        )
        return result
