"""Key and resource naming shared by the registry and the workers."""

REGISTRY_SORT_KEY = "METADATA"
INIT_SORT_KEY = "init"


def partition_key(entity: str, entity_id: str) -> str:
    return f"{entity.upper()}#{entity_id}"


def dedicated_table_name(entity: str, entity_id: str) -> str:
    return f"{entity.upper()}_{entity_id}"


def stack_name(entity: str, entity_id: str) -> str:
    return f"{entity.lower()}-{entity_id}-dynamodb"


def role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def execution_arn(state_machine_arn: str, execution_name: str) -> str:
    # arn:aws:states:<region>:<account>:stateMachine:<name> -> ...:execution:<name>:<execution>
    return f"{state_machine_arn.replace(':stateMachine:', ':execution:', 1)}:{execution_name}"
