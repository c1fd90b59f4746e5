"""Reconciliation strategies, one per subresource kind.

Each subresource kind has its own identity semantics, so each gets its own
sync policy behind a shared interface instead of one generic diff:

- Tags and topics carry no identity worth preserving: full replace
- Files are identified by name and carry content: identity diff (file_sync.py)
- The flag cannot be read back: create once, never update
- Requirements are a single object: replaced wholesale on every update

Strategies return the subcollection they believe is live after their
calls, together with the diagnostics they produced. They never raise for
remote failures; InvariantViolation and ReconciliationCancelled are the only
exceptions that escape.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from .codec import (
    flag_payload,
    remote_id,
    requirements_from_api,
    requirements_patch_payload,
)
from .diagnostics import Diagnostics
from .gateway import (
    GatewayError,
    ReconciliationCancelled,
    RemoteEntry,
    RemoteGateway,
    SubresourceKind,
    UnexpectedResponseError,
)
from .models import FlagModel, RequirementsModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLIENT_ERROR = "Client Error"
UNEXPECTED_RESPONSE = "Unexpected API Response"


class SubresourceStrategy(ABC, Generic[T]):
    """Sync policy for one subresource kind of a challenge."""

    kind: SubresourceKind

    def __init__(self, gateway: RemoteGateway) -> None:
        self._gateway = gateway

    @abstractmethod
    def create(self, new: T, challenge_id: int) -> tuple[T, Diagnostics]:
        """Apply the declared value to a challenge that was just created."""

    @abstractmethod
    def reconcile(self, old: T, new: T, challenge_id: int) -> tuple[T, Diagnostics]:
        """Converge the remote subcollection from ``old`` to ``new``."""

    @abstractmethod
    def read(self, challenge_id: int, previous: T) -> tuple[T, Diagnostics]:
        """Re-derive the subcollection from the API.

        ``previous`` is returned unchanged for whatever cannot be read.
        """


# =============================================================================
# Full replace: tags and topics
# =============================================================================


def _entry_value(entry: RemoteEntry) -> str:
    value = entry.get("value")
    if value is None:
        raise UnexpectedResponseError(f"entry without a value: {entry!r}")
    return str(value)


class FullReplaceStrategy(SubresourceStrategy[list[str]]):
    """Delete every remote entry, then create every declared value in order.

    Not minimal and not resumable mid-failure, but fully idempotent on
    success. A failing delete or create aborts the rest of the kind and the
    returned list describes exactly what is left live.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        kind: SubresourceKind,
        payload_builder: Callable[[int, str], dict[str, Any]],
    ) -> None:
        super().__init__(gateway)
        self.kind = kind
        self._payload_builder = payload_builder

    def create(self, new: list[str], challenge_id: int) -> tuple[list[str], Diagnostics]:
        diags = Diagnostics()
        created: list[str] = []
        try:
            self._create_values(new, challenge_id, created, diags)
        except ReconciliationCancelled as exc:
            exc.partial = created
            raise
        return created, diags

    def reconcile(
        self, old: list[str], new: list[str], challenge_id: int
    ) -> tuple[list[str], Diagnostics]:
        diags = Diagnostics()
        label = self.kind.value

        try:
            existing = self._gateway.list(self.kind, challenge_id)
            remaining = [_entry_value(entry) for entry in existing]
        except GatewayError as e:
            diags.add_error(
                CLIENT_ERROR,
                f"Unable to get all {label}s of challenge {challenge_id}, got error: {e}",
            )
            return list(old), diags

        created: list[str] = []
        try:
            for entry in existing:
                try:
                    self._gateway.delete(self.kind, remote_id(entry))
                except GatewayError as e:
                    diags.add_error(
                        CLIENT_ERROR,
                        f"Unable to delete {label} {entry.get('id')} of challenge "
                        f"{challenge_id}, got error: {e}",
                    )
                    return remaining, diags
                remaining.pop(0)

            self._create_values(new, challenge_id, created, diags)
        except ReconciliationCancelled as exc:
            exc.partial = remaining + created
            raise

        logger.info(
            "Replaced %ss",
            label,
            extra={
                "challenge_id": challenge_id,
                "deleted": len(existing),
                "created": len(created),
            },
        )
        return created, diags

    def read(self, challenge_id: int, previous: list[str]) -> tuple[list[str], Diagnostics]:
        diags = Diagnostics()
        try:
            entries = self._gateway.list(self.kind, challenge_id)
            return [_entry_value(entry) for entry in entries], diags
        except GatewayError as e:
            diags.add_error(
                CLIENT_ERROR,
                f"Unable to read challenge {challenge_id} {self.kind.value}s, got error: {e}",
            )
            return list(previous), diags

    def _create_values(
        self,
        values: list[str],
        challenge_id: int,
        created: list[str],
        diags: Diagnostics,
    ) -> None:
        for value in values:
            try:
                self._gateway.create(
                    self.kind, challenge_id, self._payload_builder(challenge_id, value)
                )
            except GatewayError as e:
                diags.add_error(
                    CLIENT_ERROR,
                    f"Unable to create {self.kind.value} {value!r} of challenge "
                    f"{challenge_id}, got error: {e}",
                )
                return
            created.append(value)


# =============================================================================
# Create-once singleton: flag
# =============================================================================


class FlagStrategy(SubresourceStrategy[FlagModel | None]):
    """The flag is created with the challenge and never touched again.

    The API offers no per-challenge flag listing, so the flag cannot be read
    back or diffed. This is a permanent boundary limitation.
    """

    kind = SubresourceKind.FLAG

    def create(
        self, new: FlagModel | None, challenge_id: int
    ) -> tuple[FlagModel | None, Diagnostics]:
        diags = Diagnostics()
        if new is None:
            return None, diags
        try:
            self._gateway.create(self.kind, challenge_id, flag_payload(challenge_id, new))
        except GatewayError as e:
            diags.add_error(CLIENT_ERROR, f"Unable to create flag, got error: {e}")
            return None, diags
        return new, diags

    def reconcile(
        self, old: FlagModel | None, new: FlagModel | None, challenge_id: int
    ) -> tuple[FlagModel | None, Diagnostics]:
        diags = Diagnostics()
        if old != new:
            diags.add_warning(
                "Flag Not Updated",
                f"The flag of challenge {challenge_id} is only set when the challenge is "
                "created; the declared change was not applied",
            )
        return old, diags

    def read(
        self, challenge_id: int, previous: FlagModel | None
    ) -> tuple[FlagModel | None, Diagnostics]:
        return previous, Diagnostics()

    def delete(self, challenge_id: int) -> Diagnostics:
        """Best-effort flag cleanup keyed by the challenge id."""
        diags = Diagnostics()
        try:
            self._gateway.delete(self.kind, challenge_id)
        except GatewayError as e:
            diags.add_warning(
                "Flag Delete Warning",
                f"Unable to delete flag for challenge {challenge_id}, got error: {e}",
            )
        return diags


# =============================================================================
# Full-replace singleton: requirements
# =============================================================================


class RequirementsStrategy(SubresourceStrategy[RequirementsModel | None]):
    """Send the declared requirements verbatim as one PATCH on every update."""

    kind = SubresourceKind.REQUIREMENTS

    def create(
        self, new: RequirementsModel | None, challenge_id: int
    ) -> tuple[RequirementsModel | None, Diagnostics]:
        # Carried by the challenge creation payload
        return new, Diagnostics()

    def reconcile(
        self,
        old: RequirementsModel | None,
        new: RequirementsModel | None,
        challenge_id: int,
    ) -> tuple[RequirementsModel | None, Diagnostics]:
        diags = Diagnostics()
        if old is None and new is None:
            return None, diags

        payload = requirements_patch_payload(new)
        try:
            self._gateway.patch_challenge(challenge_id, payload)
        except GatewayError as e:
            diags.add_error(
                CLIENT_ERROR,
                f"Unable to update requirements of challenge {challenge_id}, got error: {e}",
            )
            return old, diags
        return new, diags

    def read(
        self, challenge_id: int, previous: RequirementsModel | None
    ) -> tuple[RequirementsModel | None, Diagnostics]:
        diags = Diagnostics()
        try:
            entries = self._gateway.list(self.kind, challenge_id)
            return requirements_from_api(entries[0] if entries else None), diags
        except UnexpectedResponseError as e:
            diags.add_error(UNEXPECTED_RESPONSE, f"Requirements of challenge {challenge_id}: {e}")
        except GatewayError as e:
            diags.add_error(
                CLIENT_ERROR,
                f"Unable to read challenge {challenge_id} requirements, got error: {e}",
            )
        return previous, diags
