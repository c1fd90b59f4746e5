"""Pydantic models for challenge snapshots with validation.

A ChallengeModel is used both as the desired state loaded from a spec file
and as the last-applied snapshot persisted between runs. Remote-assigned
fields are simply empty on a freshly declared spec.

These models provide:
1. Type-safe YAML/JSON parsing
2. Validation at the boundary (closed enums are rejected here, not deep
   inside reconciliation)
3. A single shape handed to the lifecycle controller
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Closed value sets
# =============================================================================


class RequirementsBehavior(str, Enum):
    """What players see of a locked challenge."""

    HIDDEN = "hidden"
    ANONYMIZED = "anonymized"


class FlagType(str, Enum):
    """Flag validation types."""

    STATIC = "static"
    REGEX = "regex"
    PROGRAMMABLE = "programmable"


class FlagCase(str, Enum):
    """Case sensitivity of a flag comparison."""

    CASE_SENSITIVE = "case_sensitive"
    CASE_INSENSITIVE = "case_insensitive"


class FileType(str, Enum):
    """CTFd file types."""

    CHALLENGE = "challenge"
    STANDARD = "standard"
    PAGE = "page"


class FileLocation(str, Enum):
    """Upload namespace for challenge files."""

    CHALLENGE = "challenge"


class ChallengeVisibility(str, Enum):
    """Player visibility of a challenge."""

    HIDDEN = "hidden"
    VISIBLE = "visible"


class ChallengeLogic(str, Enum):
    """Flag validation logic."""

    ANY = "any"
    ALL = "all"
    TEAM = "team"


# =============================================================================
# Subresources
# =============================================================================


class RequirementsModel(BaseModel):
    """Prerequisites that must be solved before the challenge unlocks."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    behavior: RequirementsBehavior = RequirementsBehavior.HIDDEN
    prerequisites: list[Annotated[int, Field(ge=1)]] = Field(default_factory=list)


class FlagModel(BaseModel):
    """The single flag managed per challenge."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: FlagType = FlagType.STATIC
    case: FlagCase = FlagCase.CASE_INSENSITIVE
    content: Annotated[str, Field(min_length=1, alias="flag")]


class FileModel(BaseModel):
    """A file attached to a challenge.

    ``name`` is the identity key. ``path`` is write-only: CTFd cannot return
    file content, so a null path only ever comes from a previous result.
    Everything below ``location`` is filled in from the API.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    path: str | None = None
    type: FileType = FileType.CHALLENGE
    location: FileLocation = FileLocation.CHALLENGE

    # Computed
    id: int | None = None
    challenge_id: int | None = Field(None, alias="challengeId")
    storage_location: str | None = Field(None, alias="storageLocation")
    url: str | None = None
    access_type: str | None = Field(None, alias="accessType")


# =============================================================================
# Root resource
# =============================================================================


class ChallengeModel(BaseModel):
    """A standard CTFd challenge and everything it owns."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: int | None = None
    name: Annotated[str, Field(min_length=1)]
    category: Annotated[str, Field(min_length=1)]
    description: str
    attribution: str | None = None
    connection_info: str = Field("", alias="connectionInfo")
    max_attempts: Annotated[int, Field(ge=0, alias="maxAttempts")] = 0
    value: Annotated[int, Field(ge=0)]
    logic: ChallengeLogic = ChallengeLogic.ANY
    state: ChallengeVisibility = ChallengeVisibility.HIDDEN
    next: int | None = None

    requirements: RequirementsModel | None = None
    flag: FlagModel | None = None
    tags: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    files: list[FileModel] = Field(default_factory=list)

    @field_validator("files")
    @classmethod
    def validate_unique_file_names(cls, v: list[FileModel]) -> list[FileModel]:
        seen: set[str] = set()
        for file in v:
            if file.name in seen:
                raise ValueError(f"file names must be unique, duplicate: {file.name}")
            seen.add(file.name)
        return v

    def scalars(self) -> dict[str, object]:
        """Scalar attributes only, keyed by field name."""
        return self.model_dump(
            include={
                "name",
                "category",
                "description",
                "attribution",
                "connection_info",
                "max_attempts",
                "value",
                "logic",
                "state",
                "next",
            }
        )
