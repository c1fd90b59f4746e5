"""Pure mapping between challenge snapshots and CTFd API payloads.

Nothing in this module performs I/O. Parsing helpers raise
UnexpectedResponseError when the API returns a shape the snapshot cannot
represent, and InvariantViolation when a value that upstream validation
should have rejected reaches the wire.
"""

from __future__ import annotations

from typing import Any

from .gateway import UnexpectedResponseError
from .models import (
    ChallengeLogic,
    ChallengeModel,
    ChallengeVisibility,
    FileModel,
    FileType,
    FlagCase,
    FlagModel,
    RequirementsBehavior,
    RequirementsModel,
)

CHALLENGE_TYPE = "standard"
TOPIC_TYPE = "challenge"
FILE_URL_PREFIX = "/files/"
FILE_ACCESS_TYPE = "public"  # CTFd does not report access control per file


class InvariantViolation(Exception):
    """Raised when a value outside a closed set reaches the codec.

    This indicates a validation bug upstream. It must never be downgraded to
    a diagnostic: the whole pass fails immediately.
    """

    pass


# =============================================================================
# Requirements
# =============================================================================


def get_anon(behavior: RequirementsBehavior | str) -> bool | None:
    """Map an unlock behaviour to CTFd's ``anonymize`` flag."""
    try:
        value = RequirementsBehavior(behavior)
    except ValueError as e:
        raise InvariantViolation(f"invalid anonymization value: {behavior!r}") from e

    if value is RequirementsBehavior.HIDDEN:
        return None
    return True


def from_anon(anonymize: bool | None) -> RequirementsBehavior:
    """Map CTFd's ``anonymize`` flag back to an unlock behaviour."""
    if anonymize is None:
        return RequirementsBehavior.HIDDEN
    if anonymize is True:
        return RequirementsBehavior.ANONYMIZED
    raise InvariantViolation(f"invalid anonymization value, got {anonymize!r}")


def requirements_to_api(requirements: RequirementsModel | None) -> dict[str, Any]:
    """Build the ``requirements`` object of a challenge payload.

    An absent declaration is sent as an empty prerequisite list so that a
    PATCH clears whatever was applied before.
    """
    if requirements is None:
        return {"prerequisites": [], "anonymize": None}
    return {
        "prerequisites": list(requirements.prerequisites),
        "anonymize": get_anon(requirements.behavior),
    }


def requirements_from_api(data: dict[str, Any] | None) -> RequirementsModel | None:
    if not data:
        return None
    prerequisites = data.get("prerequisites") or []
    try:
        ids = [int(p) for p in prerequisites]
    except (TypeError, ValueError) as e:
        raise UnexpectedResponseError(f"non-numeric prerequisite in {prerequisites!r}") from e
    return RequirementsModel(behavior=from_anon(data.get("anonymize")), prerequisites=ids)


def requirements_in_effect(requirements: RequirementsModel | None) -> RequirementsModel | None:
    """Hidden requirements without prerequisites lock nothing: same as none."""
    if requirements is None:
        return None
    if requirements.behavior == RequirementsBehavior.HIDDEN and not requirements.prerequisites:
        return None
    return requirements


# =============================================================================
# Challenge
# =============================================================================


def _scalar_payload(challenge: ChallengeModel) -> dict[str, Any]:
    return {
        "name": challenge.name,
        "category": challenge.category,
        "description": challenge.description,
        "attribution": challenge.attribution,
        "connection_info": challenge.connection_info,
        "max_attempts": challenge.max_attempts,
        "value": challenge.value,
        "logic": challenge.logic.value,
        "state": challenge.state.value,
        "next_id": challenge.next,
    }


def challenge_create_payload(challenge: ChallengeModel) -> dict[str, Any]:
    """Payload for ``POST /challenges``; requirements ride along on create."""
    payload = _scalar_payload(challenge)
    payload["type"] = CHALLENGE_TYPE
    if challenge.requirements is not None:
        payload["requirements"] = requirements_to_api(challenge.requirements)
    return payload


def challenge_patch_payload(challenge: ChallengeModel) -> dict[str, Any]:
    """Payload for the scalar ``PATCH /challenges/{id}``."""
    return _scalar_payload(challenge)


def requirements_patch_payload(requirements: RequirementsModel | None) -> dict[str, Any]:
    """Payload for the requirements-only ``PATCH /challenges/{id}``."""
    return {"requirements": requirements_to_api(requirements)}


def scalars_from_api(data: dict[str, Any]) -> dict[str, Any]:
    """Extract snapshot scalars from a ``GET /challenges/{id}`` response."""
    try:
        logic = ChallengeLogic(data.get("logic") or ChallengeLogic.ANY.value)
        state = ChallengeVisibility(data.get("state") or ChallengeVisibility.HIDDEN.value)
    except ValueError as e:
        raise UnexpectedResponseError(f"unsupported challenge attribute: {e}") from e

    if "name" not in data or "value" not in data:
        raise UnexpectedResponseError("challenge response lacks name or value")

    return {
        "name": data["name"],
        "category": data.get("category", ""),
        "description": data.get("description", ""),
        "attribution": data.get("attribution"),
        "connection_info": data.get("connection_info") or "",
        "max_attempts": data.get("max_attempts") or 0,
        "value": data["value"],
        "logic": logic,
        "state": state,
        "next": data.get("next_id"),
    }


def remote_id(entry: dict[str, Any]) -> int:
    """Read the numeric ``id`` of any API entry."""
    try:
        return int(entry["id"])
    except (KeyError, TypeError, ValueError) as e:
        raise UnexpectedResponseError(f"entry without a usable id: {entry!r}") from e


# =============================================================================
# Tags, topics and flags
# =============================================================================


def tag_payload(challenge_id: int, value: str) -> dict[str, Any]:
    return {"challenge": challenge_id, "value": value}


def topic_payload(challenge_id: int, value: str) -> dict[str, Any]:
    return {"challenge": challenge_id, "type": TOPIC_TYPE, "value": value}


def flag_payload(challenge_id: int, flag: FlagModel) -> dict[str, Any]:
    # CTFd encodes case-insensitivity in the free-form "data" field
    data = FlagCase.CASE_INSENSITIVE.value if flag.case is FlagCase.CASE_INSENSITIVE else ""
    return {
        "challenge": challenge_id,
        "content": flag.content,
        "data": data,
        "type": flag.type.value,
    }


# =============================================================================
# Files
# =============================================================================


def file_upload_payload(file: FileModel, content: bytes) -> dict[str, Any]:
    return {
        "name": file.name,
        "content": content,
        "type": file.type.value,
        "location": file.location.value,
    }


def extract_file_name(location: str) -> str:
    """Last path segment of a storage location such as ``ab12/notes.txt``."""
    return location.rsplit("/", 1)[-1]


def file_url(storage_location: str) -> str:
    return f"{FILE_URL_PREFIX}{storage_location}"


def file_from_api(
    entry: dict[str, Any],
    *,
    challenge_id: int,
    name: str | None = None,
    path: str | None = None,
) -> FileModel:
    """Build a FileModel from an upload or listing entry.

    ``name`` defaults to the last segment of the storage location, which is
    the only correlation the files API offers.
    """
    storage_location = entry.get("location")
    if not storage_location:
        raise UnexpectedResponseError(f"file entry without a location: {entry!r}")
    try:
        file_type = FileType(entry.get("type") or FileType.CHALLENGE.value)
    except ValueError as e:
        raise UnexpectedResponseError(f"unsupported file type: {entry.get('type')!r}") from e

    return FileModel(
        name=name or extract_file_name(storage_location),
        path=path,
        type=file_type,
        id=remote_id(entry),
        challenge_id=challenge_id,
        storage_location=storage_location,
        url=file_url(storage_location),
        access_type=FILE_ACCESS_TYPE,
    )
