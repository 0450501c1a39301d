"""
PATCH Interpreter

Normalizes the PATCH bodies that identity providers actually send into one
canonical list of operations, then reduces that list into a PatchPlan that a
repository applies in a single transaction.

Accepted body shapes:

    {"Operations": [{"op": "replace", "value": {"active": false}}]}
    {"Operations": [{"op": "replace", "path": "userName", "value": "x"}]}
    {"Operations": [{"op": "add", "path": "members", "value": [{"value": "id"}]}]}
    {"Operations": [{"Operations": [...]}]}    (nested, flattened one level)
    {"Operations": {"op": "replace", ...}}     (bare single operation)
    {"op": "replace", ...}                     (bare single operation)

Shape sniffing happens only in ``normalize_operations``; nothing downstream
looks at raw JSON.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..errors import BadRequest, Forbidden
from ..models.resources import ResourceRef, coerce_active, coerce_text, first_email, parse_ref

logger = logging.getLogger(__name__)

SUPPORTED_OPS = ("add", "replace", "remove")

# members[value eq "id"] / groups[value eq 'id']
_RELATION_FILTER_RE = re.compile(
    r'^(members|groups)\[\s*value\s+eq\s+["\']?([^"\'\]]+)["\']?\s*\]$',
    re.IGNORECASE,
)
# emails[type eq "work"].value
_EMAIL_FILTER_RE = re.compile(r"^emails\[[^\]]*\](\.value)?$", re.IGNORECASE)


class PatchSchema:
    """
    Attribute vocabulary of one resource type.

    Maps lower-cased SCIM paths to the canonical attribute names the
    repository stores, and names the relation attribute (``groups`` on a
    User, ``members`` on a Group).
    """

    def __init__(self, resource_type: str, attributes: Dict[str, str], relation: str):
        self.resource_type = resource_type
        self.attributes = attributes
        self.relation = relation

    def resolve_path(self, path: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Resolve a PATCH path to ``(target, member_id)``.

        ``member_id`` is set only for ``members[value eq "id"]`` style paths.
        An unknown path resolves to ``(None, None)``.
        """
        path = path.strip()
        lowered = path.lower()

        if lowered == self.relation:
            return self.relation, None

        match = _RELATION_FILTER_RE.match(path)
        if match and match.group(1).lower() == self.relation:
            return self.relation, match.group(2).strip()

        if lowered in self.attributes:
            return self.attributes[lowered], None

        if _EMAIL_FILTER_RE.match(path) and "email" in self.attributes.values():
            return "email", None

        return None, None


USER_SCHEMA = PatchSchema(
    "User",
    {
        "active": "active",
        "username": "userName",
        "givenname": "givenName",
        "name.givenname": "givenName",
        "middlename": "middleName",
        "name.middlename": "middleName",
        "familyname": "familyName",
        "name.familyname": "familyName",
        "email": "email",
        "emails": "email",
        "emails.value": "email",
    },
    relation="groups",
)

GROUP_SCHEMA = PatchSchema(
    "Group",
    {"displayname": "displayName"},
    relation="members",
)


class PatchOperation(BaseModel):
    """
    One canonical PATCH instruction.

    ``target`` is a canonical scalar attribute name or the relation name;
    for the relation, ``value`` is a list of ResourceRef.
    """

    op: str
    target: str
    value: Any = None


class MembershipChange(BaseModel):
    ref: ResourceRef
    add: bool


class PatchPlan(BaseModel):
    """
    The net effect of an ordered list of operations.

    ``attributes`` holds the final value of every scalar that was written;
    ``reset_members`` means the membership set is replaced rather than
    edited, and ``member_changes`` are the ordered additions and removals
    applied on top.
    """

    attributes: Dict[str, Any] = Field(default_factory=dict)
    reset_members: bool = False
    member_changes: List[MembershipChange] = Field(default_factory=list)

    @property
    def touches_members(self) -> bool:
        return self.reset_members or bool(self.member_changes)


def _extract_raw_operations(body: Any) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        operations = body
    elif isinstance(body, dict):
        if "Operations" in body:
            operations = body["Operations"]
        elif "operations" in body:
            operations = body["operations"]
        elif "op" in body:
            operations = [body]
        else:
            raise BadRequest("Missing or invalid Operations array")
    else:
        raise BadRequest("PATCH body must be a JSON object")

    if isinstance(operations, dict):
        operations = [operations]
    if not isinstance(operations, list):
        raise BadRequest("Missing or invalid Operations array")
    if not operations:
        raise BadRequest("Operations array is empty")

    flattened = []
    for entry in operations:
        if not isinstance(entry, dict):
            raise BadRequest(f"Invalid PATCH operation: {entry!r}")
        nested = entry.get("Operations")
        if nested is None:
            flattened.append(entry)
            continue
        # Some clients wrap the whole request a second time
        if isinstance(nested, dict):
            nested = [nested]
        if not isinstance(nested, list):
            raise BadRequest("Missing or invalid nested Operations array")
        for inner in nested:
            if not isinstance(inner, dict):
                raise BadRequest(f"Invalid PATCH operation: {inner!r}")
            flattened.append(inner)

    if not flattened:
        raise BadRequest("Operations array is empty")
    return flattened


def _member_refs(value: Any) -> List[ResourceRef]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    if not isinstance(value, list):
        raise BadRequest(f"Invalid membership value: {value!r}")

    refs = []
    for entry in value:
        if isinstance(entry, str):
            refs.append(ResourceRef(value=entry))
        elif isinstance(entry, dict):
            refs.append(parse_ref(entry))
        elif entry:
            raise BadRequest(f"Invalid membership value: {entry!r}")
    return refs


def _expand_value_object(op: str, value: Dict[str, Any], schema: PatchSchema) -> List[PatchOperation]:
    """Split a path-less ``{"attr": value, ...}`` operation into one operation per attribute."""
    expanded = []
    for key, item in value.items():
        if key == "name" and isinstance(item, dict):
            for name_key, name_value in item.items():
                target, _ = schema.resolve_path(f"name.{name_key}")
                if target is None:
                    logger.warning(f"Ignoring unsupported {schema.resource_type} attribute: name.{name_key}")
                    continue
                expanded.append(PatchOperation(op=op, target=target, value=name_value))
            continue

        target, member_id = schema.resolve_path(key)
        if target is None:
            logger.warning(f"Ignoring unsupported {schema.resource_type} attribute: {key}")
            continue
        if target == schema.relation:
            refs = [ResourceRef(value=member_id)] if member_id else _member_refs(item)
            expanded.append(PatchOperation(op=op, target=target, value=refs))
        else:
            expanded.append(PatchOperation(op=op, target=target, value=item))
    return expanded


def normalize_operations(body: Any, schema: PatchSchema) -> List[PatchOperation]:
    """
    Turn a decoded PATCH body into an ordered list of PatchOperations.

    Args:
        body: Decoded JSON request body
        schema: Attribute vocabulary of the resource being patched

    Returns:
        Canonical operations in request order

    Raises:
        BadRequest: If no operations are present, the list is empty, or an
            add/replace carries no value
        Forbidden: If any operation is not add, replace or remove
    """
    raw_operations = _extract_raw_operations(body)

    operations: List[PatchOperation] = []
    for raw in raw_operations:
        op = coerce_text(raw.get("op")).strip().lower()
        if op not in SUPPORTED_OPS:
            logger.warning(f"The requested operation, {op!r}, is not supported")
            raise Forbidden("Operation Not Supported")

        path = raw.get("path")
        value = raw.get("value")

        if path:
            target, member_id = schema.resolve_path(coerce_text(path))
            if target is None:
                logger.warning(f"Ignoring unsupported {schema.resource_type} path: {path}")
                continue

            if target == schema.relation:
                if member_id:
                    refs = [ResourceRef(value=member_id)]
                elif op == "remove" and value is None:
                    logger.warning(f"Remove of all {target} without a value is not supported; ignoring")
                    continue
                else:
                    if value is None:
                        raise BadRequest("Missing value for operation")
                    refs = _member_refs(value)
                operations.append(PatchOperation(op=op, target=target, value=refs))
                continue

            if op == "remove":
                logger.warning(f"Remove of {schema.resource_type} attribute {target} is not supported; ignoring")
                continue
            if value is None:
                raise BadRequest("Missing value for operation")
            operations.append(PatchOperation(op=op, target=target, value=value))
            continue

        if value is None:
            if op == "remove":
                logger.warning("Remove without path or value; ignoring")
                continue
            raise BadRequest("Missing value for operation")

        if not isinstance(value, dict):
            raise BadRequest("Operation without a path requires an object value")

        for expanded in _expand_value_object(op, value, schema):
            if expanded.target != schema.relation and op == "remove":
                logger.warning(f"Remove of {schema.resource_type} attribute {expanded.target} is not supported; ignoring")
                continue
            operations.append(expanded)

    return operations


def coerce_attribute(target: str, value: Any) -> Any:
    if target == "active":
        return coerce_active(value)
    if target == "email" and not isinstance(value, str):
        return first_email(value)
    return coerce_text(value)


def build_plan(operations: List[PatchOperation], schema: PatchSchema) -> PatchPlan:
    """
    Reduce canonical operations into their net effect.

    Later operations override earlier ones on the same attribute, and a
    replace of the relation discards every earlier membership change.
    """
    plan = PatchPlan()
    for operation in operations:
        if operation.target == schema.relation:
            if operation.op == "replace":
                plan.reset_members = True
                plan.member_changes = []
            add = operation.op != "remove"
            for ref in operation.value:
                plan.member_changes.append(MembershipChange(ref=ref, add=add))
            continue

        if operation.op == "remove":
            continue
        plan.attributes[operation.target] = coerce_attribute(operation.target, operation.value)
    return plan


def interpret(body: Any, schema: PatchSchema) -> PatchPlan:
    """Normalize and reduce a PATCH body in one step."""
    operations = normalize_operations(body, schema)
    logger.debug(f"Normalized {len(operations)} {schema.resource_type} PATCH operation(s)")
    return build_plan(operations, schema)


def plan_for_attribute(attribute: str, value: Any, schema: PatchSchema) -> PatchPlan:
    """Build the plan for the simple ``patch(attribute, value)`` form."""
    target, member_id = schema.resolve_path(attribute)
    if target is None:
        raise BadRequest(f"Unsupported {schema.resource_type} attribute: {attribute}")
    if target == schema.relation:
        refs = [ResourceRef(value=member_id)] if member_id else _member_refs(value)
        operations = [PatchOperation(op="replace", target=target, value=refs)]
    else:
        if value is None:
            raise BadRequest("Missing value for operation")
        operations = [PatchOperation(op="replace", target=target, value=value)]
    return build_plan(operations, schema)


def merge_memberships(
    current: List[str],
    plan: PatchPlan,
    resolve: Callable[[ResourceRef, bool], Optional[str]],
) -> List[str]:
    """
    Compute the membership id list a plan leaves behind.

    Args:
        current: Ids currently related to the resource, in storage order
        plan: The reduced PATCH plan
        resolve: Maps a reference to an id; the flag is True for additions,
            where an unresolvable reference must raise

    Returns:
        The target id list; ids kept from ``current`` keep their order
    """
    result = [] if plan.reset_members else list(current)
    for change in plan.member_changes:
        resolved = resolve(change.ref, change.add)
        if resolved is None:
            continue
        if change.add:
            if resolved not in result:
                result.append(resolved)
        elif resolved in result:
            result.remove(resolved)
    return result
