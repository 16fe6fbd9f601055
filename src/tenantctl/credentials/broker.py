import re
import time
from datetime import datetime
from typing import Optional
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from tenantctl.config import Settings
from tenantctl.errors import ConfigurationError, CrossAccountAuthError
from tenantctl.logger import get_logger
from tenantctl.naming import role_arn

logger = get_logger(__name__)

THROTTLING_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "TooManyRequestsException"}
ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")


class Credentials(BaseModel):
    access_key: str
    secret_key: str
    session_token: str
    expiry: datetime


class ScopedClients:
    """Clients bound to one assumed-role session. Build one per operation and drop it afterwards."""

    def __init__(self, credentials: Credentials, region: str):
        self.credentials = credentials
        self.region = region
        session = boto3.session.Session(
            aws_access_key_id=credentials.access_key,
            aws_secret_access_key=credentials.secret_key,
            aws_session_token=credentials.session_token,
            region_name=region,
        )
        config = BotoConfig(retries={"max_attempts": 3, "mode": "adaptive"})
        self.cloudformation = session.client("cloudformation", config=config)
        self.dynamodb = session.resource("dynamodb", config=config)


class CredentialBroker:
    """Exchanges the worker's own identity for short-lived credentials in a tenant account."""

    def __init__(self, settings: Optional[Settings] = None, sts_client=None, session_prefix: str = "tenantctl", sleep=time.sleep):
        self.settings = settings or Settings.from_environment()
        self.sts = sts_client or boto3.client("sts", region_name=self.settings.region)
        self.session_prefix = session_prefix
        self.sleep = sleep

    def role_arn(self, target_account_id: str) -> str:
        if not target_account_id or not ACCOUNT_ID_RE.match(str(target_account_id)):
            raise ConfigurationError(f"Invalid target account id: {target_account_id!r}")
        return role_arn(target_account_id, self.settings.cross_account_role_name)

    def session_name(self, context_id: str) -> str:
        name = SESSION_NAME_INVALID.sub("-", f"{self.session_prefix}-{context_id}")
        return name[:64]

    def assume_role(self, target_account_id: str, context_id: str) -> Credentials:
        arn = self.role_arn(target_account_id)
        session_name = self.session_name(context_id)
        max_attempts = self.settings.assume_role_max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                response = self.sts.assume_role(
                    RoleArn=arn,
                    RoleSessionName=session_name,
                    DurationSeconds=self.settings.assume_role_duration,
                    ExternalId=self.settings.external_id,
                )
            except ClientError as e:
                code = e.response["Error"]["Code"]
                if code in THROTTLING_CODES and attempt < max_attempts:
                    logger.warning(
                        f"Role assumption throttled, retrying ({attempt}/{max_attempts})",
                        extra={"tenant_id": context_id, "target_account_id": target_account_id, "attempt": attempt},
                    )
                    self.sleep(2 ** attempt * 0.5)
                    continue
                logger.error(
                    f"Failed to assume cross-account role {arn}: {code}",
                    extra={"tenant_id": context_id, "target_account_id": target_account_id, "attempt": attempt},
                )
                raise CrossAccountAuthError(
                    f"Cannot assume {arn}: {e.response['Error'].get('Message', code)}", role_arn=arn, code=code
                ) from e
            except BotoCoreError as e:
                logger.error(f"Failed to assume cross-account role {arn}: {e}", extra={"tenant_id": context_id})
                raise CrossAccountAuthError(f"Cannot assume {arn}: {e}", role_arn=arn) from e

            creds = response["Credentials"]
            logger.info(
                f"Assumed cross-account role {response['AssumedRoleUser']['Arn']}",
                extra={"tenant_id": context_id, "target_account_id": target_account_id},
            )
            return Credentials(
                access_key=creds["AccessKeyId"],
                secret_key=creds["SecretAccessKey"],
                session_token=creds["SessionToken"],
                expiry=creds["Expiration"],
            )

    def clients_for(self, target_account_id: str, context_id: str, region: Optional[str] = None) -> ScopedClients:
        credentials = self.assume_role(target_account_id, context_id)
        return ScopedClients(credentials, region or self.settings.region)
