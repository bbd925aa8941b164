"""
Thin AWS wrapper used by the credential broker.
"""

import ipaddress
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ark_agent.errors import ProviderError
from ark_agent.logging import get_logger
from ark_agent.schemas import CallerIdentity, CreateBucketResult, Credential

logger = get_logger("Provider")

DEFAULT_REGION = "us-east-1"
ENCRYPTION_TYPES = ("AES256", "aws:kms")

_BUCKET_CHARS = re.compile(r"^[a-z0-9.\-]+$")

_ERROR_MESSAGES = {
    "BucketAlreadyExists": (
        "bucket name already taken globally "
        "(S3 bucket names must be unique across all AWS accounts)"
    ),
    "BucketAlreadyOwnedByYou": "you already own a bucket with this name",
    "InvalidBucketName": (
        "invalid bucket name "
        "(check naming rules: 3-63 chars, lowercase, no consecutive periods)"
    ),
    "AccessDenied": (
        "permission denied "
        "(check your AWS credentials have s3:CreateBucket permission)"
    ),
    "TooManyBuckets": "bucket limit reached (AWS allows 100 buckets per account by default)",
    "InvalidClientTokenId": "invalid credentials (the access key ID is not recognized)",
    "SignatureDoesNotMatch": "invalid credentials (the secret access key does not match)",
    "ExpiredToken": "credentials expired (the session token is no longer valid)",
}


def bucket_name_problems(name: str) -> list[str]:
    """
    Check an S3 bucket name against the AWS naming rules.

    Returns:
        list[str]: Every violated rule; empty if the name is valid
    """
    problems = []
    if len(name) < 3 or len(name) > 63:
        problems.append("must be between 3 and 63 characters long")
    if name.lower() != name:
        problems.append("must be lowercase")
    if not _BUCKET_CHARS.match(name.lower() or "-"):
        problems.append("can only contain lowercase letters, numbers, hyphens, and periods")
    if name[:1] in ("-", ".") or name[-1:] in ("-", "."):
        problems.append("cannot start or end with a hyphen or period")
    if ".." in name:
        problems.append("cannot contain consecutive periods")
    try:
        ipaddress.IPv4Address(name)
    except ValueError:
        pass
    else:
        problems.append("cannot be formatted as an IP address")
    return problems


def translate_error(err: Exception) -> ProviderError:
    """
    Turn a boto error into a ProviderError with a human-readable message,
    based on the provider's error code.
    """
    if isinstance(err, ClientError):
        code = err.response.get("Error", {}).get("Code", "")
        message = err.response.get("Error", {}).get("Message", "")
        friendly = _ERROR_MESSAGES.get(code)
        if friendly:
            return ProviderError(friendly, code=code)
        return ProviderError(f"AWS error ({code}): {message}", code=code)
    return ProviderError(f"S3 operation failed: {err}")


@dataclass
class CreateBucketInput:
    bucket_name: str
    region: str
    encryption_type: str = "AES256"
    kms_key_id: Optional[str] = None
    versioning_enabled: bool = False


class AWSClient:
    """
    boto3 clients built from stored credentials.
    """

    def __init__(self, credential: Credential, region: str = ""):
        self.region = region or credential.region or DEFAULT_REGION
        session = boto3.session.Session(
            aws_access_key_id=credential.access_key_id,
            aws_secret_access_key=credential.secret_access_key,
            aws_session_token=credential.session_token or None,
            region_name=self.region,
        )
        self.s3 = session.client("s3")
        self.sts = session.client("sts")

    def caller_identity(self) -> CallerIdentity:
        """
        Validate the credentials with STS GetCallerIdentity.

        Raises:
            ProviderError: If the credentials are rejected
        """
        try:
            identity = self.sts.get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e) from e
        return CallerIdentity(
            account=identity["Account"], arn=identity["Arn"], user_id=identity["UserId"]
        )

    def create_bucket(self, spec: CreateBucketInput) -> CreateBucketResult:
        """
        Create a bucket, then apply default encryption and versioning.

        Raises:
            ProviderError: If any of the calls fails
        """
        region = spec.region or self.region
        params = {"Bucket": spec.bucket_name}
        # us-east-1 rejects an explicit location constraint
        if region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}

        try:
            self.s3.create_bucket(**params)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e) from e

        if spec.encryption_type and spec.encryption_type != "none":
            try:
                self._put_encryption(spec)
            except (ClientError, BotoCoreError) as e:
                raise ProviderError(
                    f"configure encryption: {translate_error(e)}", code="EncryptionFailed"
                ) from e

        if spec.versioning_enabled:
            try:
                self.s3.put_bucket_versioning(
                    Bucket=spec.bucket_name,
                    VersioningConfiguration={"Status": "Enabled"},
                )
            except (ClientError, BotoCoreError) as e:
                raise ProviderError(
                    f"enable versioning: {translate_error(e)}", code="VersioningFailed"
                ) from e

        logger.info(f"Created bucket {spec.bucket_name} in {region}")
        return CreateBucketResult(
            bucket_name=spec.bucket_name,
            region=region,
            location=f"http://{spec.bucket_name}.s3.amazonaws.com/",
            created_at=datetime.now(timezone.utc),
        )

    def _put_encryption(self, spec: CreateBucketInput):
        if spec.encryption_type == "aws:kms":
            default = {"SSEAlgorithm": "aws:kms", "KMSMasterKeyID": spec.kms_key_id}
        else:
            default = {"SSEAlgorithm": "AES256"}
        self.s3.put_bucket_encryption(
            Bucket=spec.bucket_name,
            ServerSideEncryptionConfiguration={
                "Rules": [{"ApplyServerSideEncryptionByDefault": default}]
            },
        )
