"""Clerk user events -> job payloads.

Everything here is pure and total: malformed events produce a best-effort
payload rather than an exception, leaving rejection to the job handlers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class UserRole(str, Enum):
    ADMIN = "admin"
    CAREGIVER = "caregiver"
    USER = "user"


class JobType(str, Enum):
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"


ROLE_METADATA_BLOCKS: tuple[str, ...] = ("public_metadata", "private_metadata", "unsafe_metadata")

ROLE_ALIASES: dict[str, UserRole] = {
    "admin": UserRole.ADMIN,
    "administrator": UserRole.ADMIN,
    "caregiver": UserRole.CAREGIVER,
    "care_giver": UserRole.CAREGIVER,
    "care-giver": UserRole.CAREGIVER,
    "user": UserRole.USER,
    "standard": UserRole.USER,
    "default": UserRole.USER,
}

EVENT_JOB_TYPES: dict[str, JobType] = {
    "user.created": JobType.USER_CREATED,
    "user.updated": JobType.USER_UPDATED,
    "user.deleted": JobType.USER_DELETED,
}


def map_role(raw_role: Any) -> UserRole:
    if not isinstance(raw_role, str):
        return UserRole.USER
    return ROLE_ALIASES.get(raw_role.strip().lower(), UserRole.USER)


def resolve_raw_role(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    for block_name in ROLE_METADATA_BLOCKS:
        block = data.get(block_name)
        if not isinstance(block, dict):
            continue
        role = block.get("role")
        if isinstance(role, str) and role != "":
            return role
    return None


def job_type_for_event(event_type: Any) -> JobType | None:
    if not isinstance(event_type, str):
        return None
    return EVENT_JOB_TYPES.get(event_type.strip())


def normalize_user_event(data: Any) -> dict[str, Any]:
    fields: dict[str, Any] = data if isinstance(data, dict) else {}
    first_name = _as_text(fields.get("first_name")) or ""
    last_name = _as_text(fields.get("last_name")) or ""
    return {
        "clerk_id": _as_text(fields.get("id")),
        "email": primary_email(fields),
        "name": f"{first_name} {last_name}".strip(),
        "user_role": map_role(resolve_raw_role(fields)).value,
    }


def primary_email(data: dict[str, Any]) -> str | None:
    addresses = data.get("email_addresses")
    if not isinstance(addresses, list):
        return None
    primary_id = data.get("primary_email_address_id")
    for entry in addresses:
        if not isinstance(entry, dict):
            continue
        if primary_id is not None and entry.get("id") == primary_id:
            return _as_text(entry.get("email_address"))
    return None


def build_job_payload(job_type: JobType, data: Any) -> dict[str, Any]:
    normalized = normalize_user_event(data)
    if job_type is JobType.USER_DELETED:
        payload: dict[str, Any] = {"clerk_id": normalized["clerk_id"]}
        if normalized["email"]:
            payload["email"] = normalized["email"]
    else:
        payload = dict(normalized)
    payload["retry_count"] = 0
    return payload


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
