from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Mapping

from pydantic import ValidationError as PydanticValidationError

from accountkit.service.errors import ValidationError
from accountkit.service.validation import AccountFields, describe_errors
from accountkit.storage.models import Account

SUPPORTED_OPS = frozenset({"add", "replace", "remove"})

# Path segment (lowercased, underscores dropped) -> Account attribute
_EDITABLE_FIELDS = {
    "name": "name",
    "username": "username",
    "email": "email",
    "dateofbirth": "date_of_birth",
}
_CREDENTIAL_FIELDS = frozenset({"password", "passwordhash", "confirmpassword"})
_READ_ONLY_FIELDS = frozenset(
    {"id", "emailverified", "isemailverified", "createdat", "updatedat"}
)


@dataclass
class PatchOperation:
    op: str
    path: str
    value: Any = None


def _field_key(path: str) -> str:
    if not isinstance(path, str) or not path.startswith("/"):
        raise ValidationError(
            "patch path must be a JSON pointer", detail={"path": path}
        )
    segment = path[1:]
    if not segment or "/" in segment:
        raise ValidationError(
            "patch path must name a single top-level field", detail={"path": path}
        )
    return segment.replace("~1", "/").replace("~0", "~").replace("_", "").lower()


def parse_operations(raw: Iterable[Any]) -> List[PatchOperation]:
    """Turn a JSON-patch document into operations, rejecting anything unsafe.

    Every operation is checked before any is applied, so a document that
    touches a credential field is refused as a whole.
    """
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        raise ValidationError("patch document must be a list of operations")
    operations: List[PatchOperation] = []
    for index, item in enumerate(raw):
        if isinstance(item, PatchOperation):
            entry = {"op": item.op, "path": item.path, "value": item.value}
        elif isinstance(item, Mapping):
            entry = item
        else:
            raise ValidationError(
                "patch operation must be an object", detail={"index": index}
            )
        op = str(entry.get("op", "")).lower()
        path = entry.get("path")
        if op not in SUPPORTED_OPS:
            raise ValidationError(
                f"unsupported patch operation '{op}'", detail={"index": index, "op": op}
            )
        key = _field_key(path)
        if key in _CREDENTIAL_FIELDS:
            raise ValidationError(
                "password fields cannot be changed through a patch",
                detail={"index": index, "path": path},
            )
        if key in _READ_ONLY_FIELDS:
            raise ValidationError(
                f"field '{path}' is read-only", detail={"index": index, "path": path}
            )
        if key not in _EDITABLE_FIELDS:
            raise ValidationError(
                f"unknown field '{path}'", detail={"index": index, "path": path}
            )
        if op != "remove" and "value" not in entry:
            raise ValidationError(
                f"'{op}' requires a value", detail={"index": index, "path": path}
            )
        operations.append(PatchOperation(op=op, path=path, value=entry.get("value")))
    return operations


def apply_patch(account: Account, operations: Iterable[Any]) -> Account:
    """Apply operations in order and return a validated replacement account.

    The input account is not modified. Fields outside the editable set, the
    password hash in particular, are carried over untouched.
    """
    parsed = parse_operations(operations)
    document = {
        "name": account.name,
        "username": account.username,
        "email": account.email,
        "date_of_birth": account.date_of_birth,
    }
    for operation in parsed:
        attr = _EDITABLE_FIELDS[_field_key(operation.path)]
        document[attr] = None if operation.op == "remove" else operation.value
    try:
        validated = AccountFields.model_validate(document)
    except PydanticValidationError as exc:
        raise ValidationError(
            "patched account is invalid", detail={"errors": describe_errors(exc)}
        ) from exc
    return replace(
        account,
        name=validated.name,
        username=validated.username,
        email=validated.email,
        date_of_birth=validated.date_of_birth,
    )
