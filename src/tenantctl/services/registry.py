import random
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional
import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from tenantctl.config import Settings
from tenantctl.errors import (
    ExecutionInFlightError,
    InvalidStateTransitionError,
    TenantAlreadyExistsError,
    TenantIdExhaustedError,
    TenantNotFoundError,
)
from tenantctl.logger import get_logger
from tenantctl.models import ProvisioningState, TenantRecord, TRANSIENT_STATES, allowed_sources, utc_now
from tenantctl.naming import REGISTRY_SORT_KEY, partition_key

logger = get_logger(__name__)


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response["Error"]["Code"] == "ConditionalCheckFailedException"


def tenant_id_candidates(now: datetime, rng: Optional[random.Random] = None) -> Iterator[str]:
    """
    Yields 8 character tenant ids in preference order: YYYYMMDD, YYMMDDHH,
    then YYMMDD plus every two digit suffix in random order.
    """
    rng = rng or random.Random()
    yield now.strftime("%Y%m%d")
    yield now.strftime("%y%m%d%H")
    suffixes = [f"{n:02d}" for n in range(100)]
    rng.shuffle(suffixes)
    day = now.strftime("%y%m%d")
    for suffix in suffixes:
        yield day + suffix


class RegistryStore:
    """Durable tenant records keyed by ``<ENTITY>#<id>`` / ``METADATA``."""

    def __init__(self, settings: Optional[Settings] = None, dynamodb=None):
        self.settings = settings or Settings.from_environment()
        self.dynamodb = dynamodb or boto3.resource("dynamodb", region_name=self.settings.region)
        self.table_name = self.settings.registry_table
        self.table = self.dynamodb.Table(self.table_name)

    def _key(self, tenant_id: str) -> Dict[str, str]:
        return {"pk": partition_key(self.settings.entity, tenant_id), "sk": REGISTRY_SORT_KEY}

    # Reads

    def get(self, tenant_id: str) -> Optional[TenantRecord]:
        response = self.table.get_item(Key=self._key(tenant_id), ConsistentRead=True)
        item = response.get("Item")
        if not item:
            return None
        return TenantRecord.from_item(item)

    def require(self, tenant_id: str) -> TenantRecord:
        record = self.get(tenant_id)
        if record is None:
            raise TenantNotFoundError(tenant_id)
        return record

    def list_all(self) -> List[TenantRecord]:
        prefix = f"{self.settings.entity_prefix}#"
        scan_kwargs = {"FilterExpression": Attr("sk").eq(REGISTRY_SORT_KEY) & Attr("pk").begins_with(prefix)}
        records = []
        while True:
            response = self.table.scan(**scan_kwargs)
            records.extend(TenantRecord.from_item(item) for item in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
        return records

    def find_by_name(self, tenant_name: str) -> Optional[TenantRecord]:
        for record in self.list_all():
            if record.tenant_name == tenant_name and record.provisioning_state != ProvisioningState.DELETED:
                return record
        return None

    def find_stalled(self, older_than: timedelta, now: Optional[datetime] = None) -> List[TenantRecord]:
        """Transient states and leftover execution handles that have not moved since the cutoff."""
        cutoff = (now or utc_now()) - older_than
        return [
            record
            for record in self.list_all()
            if (record.provisioning_state in TRANSIENT_STATES or record.in_flight) and record.last_modified < cutoff
        ]

    # Creation

    def create(self, record: TenantRecord) -> TenantRecord:
        item = record.to_item()
        item.update(self._key(record.tenant_id))
        try:
            self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(pk)")
        except ClientError as e:
            if _is_conditional_failure(e):
                raise TenantAlreadyExistsError(
                    f"Tenant id {record.tenant_id} is already registered", existing_tenant_id=record.tenant_id
                ) from e
            raise
        return record

    def create_with_generated_id(
        self,
        build: Callable[[str], TenantRecord],
        now: Optional[datetime] = None,
        candidates: Optional[Iterable[str]] = None,
    ) -> TenantRecord:
        """Claim the first free id candidate with a conditional put; racing creators fall through to the next one."""
        for tenant_id in candidates or tenant_id_candidates(now or utc_now()):
            try:
                return self.create(build(tenant_id))
            except TenantAlreadyExistsError:
                logger.info(f"Tenant id {tenant_id} taken, trying next candidate", extra={"tenant_id": tenant_id})
        raise TenantIdExhaustedError("No free tenant id left for today")

    # Updates

    def update_fields(
        self,
        tenant_id: str,
        fields: Optional[Dict[str, Any]] = None,
        remove: Optional[Iterable[str]] = None,
        condition: Optional[str] = None,
        condition_values: Optional[Dict[str, Any]] = None,
        condition_names: Optional[Dict[str, str]] = None,
    ) -> TenantRecord:
        """
        Apply a SET/REMOVE update to an existing record.

        ``fields`` use the stored camelCase attribute names. ``lastModified``
        is always refreshed. Raises ``ClientError`` if ``condition`` fails and
        ``TenantNotFoundError`` if the record does not exist.
        """
        fields = dict(fields or {})
        fields["lastModified"] = utc_now()

        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        set_parts = []
        for i, (name, value) in enumerate(fields.items()):
            names[f"#f{i}"] = name
            values[f":v{i}"] = _serialize(value)
            set_parts.append(f"#f{i} = :v{i}")
        expression = "SET " + ", ".join(set_parts)

        remove = list(remove or [])
        if remove:
            remove_parts = []
            for i, name in enumerate(remove):
                names[f"#r{i}"] = name
                remove_parts.append(f"#r{i}")
            expression += " REMOVE " + ", ".join(remove_parts)

        full_condition = "attribute_exists(pk)"
        if condition:
            full_condition += f" AND ({condition})"
            values.update({k: _serialize(v) for k, v in (condition_values or {}).items()})
            names.update(condition_names or {})

        try:
            response = self.table.update_item(
                Key=self._key(tenant_id),
                UpdateExpression=expression,
                ConditionExpression=full_condition,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e) and self.get(tenant_id) is None:
                raise TenantNotFoundError(tenant_id) from e
            raise
        return TenantRecord.from_item(response["Attributes"])

    def transition(
        self,
        tenant_id: str,
        target: ProvisioningState,
        fields: Optional[Dict[str, Any]] = None,
        remove: Optional[Iterable[str]] = None,
        allow_same: bool = False,
        from_states: Optional[Iterable[ProvisioningState]] = None,
        release: Optional[str] = None,
        execution_status: Optional[str] = None,
    ) -> TenantRecord:
        """
        Move a tenant to ``target`` if the transition table allows it from its
        current state. ``from_states`` narrows the accepted source states.

        With ``release`` the execution handle is cleared in the same write,
        provided it is unset or still equals ``release``. A handle held by
        another run raises ``ExecutionInFlightError``.
        """
        sources = allowed_sources(target)
        if from_states is not None:
            sources &= set(from_states)
        if allow_same:
            sources.add(target)
        placeholders = {f":s{i}": state.value for i, state in enumerate(sorted(sources, key=lambda s: s.value))}
        if not placeholders:
            current = self.require(tenant_id)
            raise InvalidStateTransitionError(tenant_id, target.value, current.provisioning_state.value)
        condition = f"#state IN ({', '.join(placeholders)})"
        condition_values: Dict[str, Any] = dict(placeholders)
        condition_names = {"#state": "provisioningState"}

        update = {"provisioningState": target}
        update.update(fields or {})
        remove = list(remove or [])
        if release:
            update["lastExecutionArn"] = release
            if execution_status:
                update["stepFunctionStatus"] = execution_status
            remove.append("stepFunctionExecutionArn")
            condition += " AND (attribute_not_exists(#exec) OR #exec = :exec)"
            condition_values[":exec"] = release
            condition_names["#exec"] = "stepFunctionExecutionArn"

        try:
            record = self.update_fields(
                tenant_id,
                update,
                remove=remove,
                condition=condition,
                condition_values=condition_values,
                condition_names=condition_names,
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            current = self.get(tenant_id)
            if current is None:
                raise InvalidStateTransitionError(tenant_id, target.value) from e
            if release and current.provisioning_state in sources and current.in_flight:
                raise ExecutionInFlightError(tenant_id, current.step_function_execution_arn) from e
            raise InvalidStateTransitionError(tenant_id, target.value, current.provisioning_state.value) from e
        logger.info(f"Tenant moved to {target.value}", extra={"tenant_id": tenant_id})
        return record

    # Execution handle

    def claim_execution(
        self,
        tenant_id: str,
        execution_arn: str,
        target: ProvisioningState,
        fields: Optional[Dict[str, Any]] = None,
    ) -> TenantRecord:
        """
        Record ``execution_arn`` as the tenant's single in-flight run and move
        it to ``target`` in the same conditional write.
        """
        sources = allowed_sources(target) | {target}
        placeholders = {f":s{i}": state.value for i, state in enumerate(sorted(sources, key=lambda s: s.value))}
        update = {
            "provisioningState": target,
            "stepFunctionExecutionArn": execution_arn,
            "stepFunctionStatus": "RUNNING",
            "cancellationRequested": False,
        }
        update.update(fields or {})
        try:
            record = self.update_fields(
                tenant_id,
                update,
                remove=["provisioningError"],
                condition=f"attribute_not_exists(#exec) AND #state IN ({', '.join(placeholders)})",
                condition_values=placeholders,
                condition_names={"#exec": "stepFunctionExecutionArn", "#state": "provisioningState"},
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            current = self.require(tenant_id)
            if current.in_flight:
                raise ExecutionInFlightError(tenant_id, current.step_function_execution_arn) from e
            raise InvalidStateTransitionError(tenant_id, target.value, current.provisioning_state.value) from e
        logger.info(
            "Execution handle recorded", extra={"tenant_id": tenant_id, "execution_arn": execution_arn}
        )
        return record

    def release_execution(self, tenant_id: str, execution_arn: str, status: str) -> Optional[TenantRecord]:
        """Clear the in-flight handle if it is still ours. Safe to repeat."""
        try:
            return self.update_fields(
                tenant_id,
                {"lastExecutionArn": execution_arn, "stepFunctionStatus": status},
                remove=["stepFunctionExecutionArn"],
                condition="#exec = :exec",
                condition_values={":exec": execution_arn},
                condition_names={"#exec": "stepFunctionExecutionArn"},
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            logger.warning(
                "Execution handle already released", extra={"tenant_id": tenant_id, "execution_arn": execution_arn}
            )
            return None

    def request_cancellation(self, tenant_id: str) -> TenantRecord:
        try:
            return self.update_fields(
                tenant_id,
                {"cancellationRequested": True},
                condition="attribute_exists(#exec)",
                condition_names={"#exec": "stepFunctionExecutionArn"},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise InvalidStateTransitionError(tenant_id, "cancelled", "no active execution") from e
            raise

    # Best-effort bookkeeping

    def record_polling_attempt(self, tenant_id: str, attempts: int) -> None:
        try:
            self.table.update_item(
                Key=self._key(tenant_id),
                UpdateExpression="SET pollingAttempts = :a, lastPolledAt = :t",
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeValues={":a": attempts, ":t": utc_now().isoformat()},
            )
        except ClientError as e:
            logger.warning(f"Failed to record polling attempt: {e}", extra={"tenant_id": tenant_id})

    def increment_deletion_attempts(self, tenant_id: str) -> None:
        try:
            self.table.update_item(
                Key=self._key(tenant_id),
                UpdateExpression="ADD deletionAttempts :one",
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeValues={":one": 1},
            )
        except ClientError as e:
            logger.warning(f"Failed to record deletion attempt: {e}", extra={"tenant_id": tenant_id})
