"""Lifecycle controller for a CTFd challenge and its subresources.

State machine per challenge:

    absent -> creating -> present -> updating -> present -> deleting -> absent
                           present -> reading -> present

Every pass is strictly sequential: a subresource can only be created once
the challenge exists, and a stale file must be deleted before its
replacement is uploaded. Each subresource kind is attempted even if another
kind failed, so one bad tag never prevents files from being reconciled.

The returned snapshot is always the best-known description of what is live
remotely and should be persisted by the caller even when the diagnostics
contain errors; otherwise remotely-created entries would be orphaned.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from .codec import (
    InvariantViolation,
    challenge_create_payload,
    challenge_patch_payload,
    remote_id,
    requirements_in_effect,
    scalars_from_api,
    tag_payload,
    topic_payload,
)
from .diagnostics import Diagnostics
from .file_sync import FileReader, FileSyncStrategy, plan_files, read_local_file
from .gateway import (
    CancellableGateway,
    GatewayError,
    ReconciliationCancelled,
    RemoteGateway,
    RemoteNotFoundError,
    SubresourceKind,
    UnexpectedResponseError,
)
from .models import ChallengeModel
from .strategies import (
    CLIENT_ERROR,
    UNEXPECTED_RESPONSE,
    FlagStrategy,
    FullReplaceStrategy,
    RequirementsStrategy,
)

logger = logging.getLogger(__name__)

CANCELLED = "Reconciliation Cancelled"

Step = tuple[str, Callable[[], tuple[Any, Diagnostics]]]


class ChallengeController:
    """Drives create/read/update/delete of one challenge at a time.

    Independent challenges may be reconciled concurrently by the caller,
    each with its own controller; a single controller is not meant to run
    two passes at once.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        *,
        file_reader: FileReader = read_local_file,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            gateway: Remote gateway to the CTFd API.
            file_reader: Source of upload content for declared file paths.
            cancel_event: Once set, no further remote call is issued.
        """
        self._cancel_event = cancel_event or threading.Event()
        self._gateway = CancellableGateway(gateway, self._cancel_event)

        self._flag = FlagStrategy(self._gateway)
        self._tags = FullReplaceStrategy(self._gateway, SubresourceKind.TAG, tag_payload)
        self._topics = FullReplaceStrategy(self._gateway, SubresourceKind.TOPIC, topic_payload)
        self._files = FileSyncStrategy(self._gateway, file_reader)
        self._requirements = RequirementsStrategy(self._gateway)

    def cancel(self) -> None:
        """Stop issuing remote calls; calls already committed are kept."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    # -------------------------------------------------------------------------
    # Caller-facing operations
    # -------------------------------------------------------------------------

    def create_all(self, new: ChallengeModel) -> tuple[ChallengeModel | None, Diagnostics]:
        """Create the challenge, then its flag, tags, topics and files.

        Returns:
            The created snapshot (None if the challenge itself could not be
            created) and the diagnostics of the pass.
        """
        diags = Diagnostics()
        try:
            created = self._gateway.create_challenge(challenge_create_payload(new))
            challenge_id = remote_id(created)
        except UnexpectedResponseError as e:
            diags.add_error(
                UNEXPECTED_RESPONSE,
                "Challenge creation returned no usable ID; it may have been created in CTFd "
                f"and must be checked for an orphan: {e}",
            )
            return None, diags
        except GatewayError as e:
            diags.add_error(CLIENT_ERROR, f"Unable to create challenge, got error: {e}")
            return None, diags
        except ReconciliationCancelled:
            diags.add_error(CANCELLED, "Cancelled before the challenge was created")
            return None, diags

        logger.info("Created challenge", extra={"challenge_id": challenge_id, "name": new.name})

        result = new.model_copy(
            update={"id": challenge_id, "flag": None, "tags": [], "topics": [], "files": []}
        )
        steps: list[Step] = [
            ("flag", lambda: self._flag.create(new.flag, challenge_id)),
            ("tags", lambda: self._tags.create(new.tags, challenge_id)),
            ("topics", lambda: self._topics.create(new.topics, challenge_id)),
            ("files", lambda: self._files.create(new.files, challenge_id)),
        ]
        result = self._run_steps(result, steps, diags)
        self._log_outcome("create", challenge_id, diags)
        return result, diags

    def update_all(
        self, old: ChallengeModel, new: ChallengeModel
    ) -> tuple[ChallengeModel, Diagnostics]:
        """Converge a present challenge from ``old`` to ``new``.

        Scalars are patched first, then tags, topics, files and requirements.

        Raises:
            InvariantViolation: If ``old`` was never created.
        """
        if old.id is None:
            raise InvariantViolation("cannot update a challenge without an id")
        challenge_id = old.id
        diags = Diagnostics()
        result = old.model_copy()

        try:
            self._gateway.patch_challenge(challenge_id, challenge_patch_payload(new))
            result = result.model_copy(update=new.scalars())
        except GatewayError as e:
            diags.add_error(CLIENT_ERROR, f"Unable to update challenge, got error: {e}")
        except ReconciliationCancelled:
            diags.add_error(CANCELLED, f"Cancelled before challenge {challenge_id} was updated")
            return result, diags

        steps: list[Step] = [
            ("flag", lambda: self._flag.reconcile(old.flag, new.flag, challenge_id)),
            ("tags", lambda: self._tags.reconcile(old.tags, new.tags, challenge_id)),
            ("topics", lambda: self._topics.reconcile(old.topics, new.topics, challenge_id)),
            ("files", lambda: self._files.reconcile(old.files, new.files, challenge_id)),
            (
                "requirements",
                lambda: self._requirements.reconcile(
                    old.requirements, new.requirements, challenge_id
                ),
            ),
        ]
        result = self._run_steps(result, steps, diags)
        self._log_outcome("update", challenge_id, diags)
        return result, diags

    def read_all(
        self, challenge_id: int, previous: ChallengeModel | None = None
    ) -> tuple[ChallengeModel | None, Diagnostics]:
        """Re-derive the snapshot from the API.

        Without ``previous`` this imports an existing challenge. The flag is
        never readable and is kept from ``previous``.

        Returns:
            The refreshed snapshot, or None with a warning when the challenge
            no longer exists.
        """
        diags = Diagnostics()
        try:
            scalars = scalars_from_api(self._gateway.get_challenge(challenge_id))
        except RemoteNotFoundError:
            diags.add_warning(
                "Challenge Not Found",
                f"Challenge {challenge_id} no longer exists in CTFd",
            )
            return None, diags
        except GatewayError as e:
            diags.add_error(
                CLIENT_ERROR, f"Unable to read challenge {challenge_id}, got error: {e}"
            )
            return previous, diags
        except ReconciliationCancelled:
            diags.add_error(CANCELLED, f"Cancelled before challenge {challenge_id} was read")
            return previous, diags

        try:
            if previous is not None:
                result = previous.model_copy(update={**scalars, "id": challenge_id})
            else:
                result = ChallengeModel(id=challenge_id, **scalars)
        except ValidationError as e:
            diags.add_error(
                UNEXPECTED_RESPONSE,
                f"Challenge {challenge_id} cannot be represented: {e}",
            )
            return previous, diags

        steps: list[Step] = [
            (
                "requirements",
                lambda: self._requirements.read(
                    challenge_id, previous.requirements if previous else None
                ),
            ),
            ("tags", lambda: self._tags.read(challenge_id, previous.tags if previous else [])),
            (
                "topics",
                lambda: self._topics.read(challenge_id, previous.topics if previous else []),
            ),
            ("files", lambda: self._files.read(challenge_id, previous.files if previous else None)),
            ("flag", lambda: self._flag.read(challenge_id, previous.flag if previous else None)),
        ]
        result = self._run_steps(result, steps, diags)
        return result, diags

    def delete_all(self, old: ChallengeModel) -> Diagnostics:
        """Delete the flag (best effort), then the challenge.

        Tags, topics, files and requirements are removed by CTFd together
        with the challenge.
        """
        diags = Diagnostics()
        if old.id is None:
            return diags
        challenge_id = old.id

        try:
            if old.flag is not None:
                diags.extend(self._flag.delete(challenge_id))
            self._gateway.delete_challenge(challenge_id)
        except RemoteNotFoundError:
            diags.add_warning(
                "Challenge Not Found",
                f"Challenge {challenge_id} was already deleted",
            )
        except GatewayError as e:
            diags.add_error(CLIENT_ERROR, f"Unable to delete challenge, got error: {e}")
        except ReconciliationCancelled:
            diags.add_error(CANCELLED, f"Cancelled before challenge {challenge_id} was deleted")

        self._log_outcome("delete", challenge_id, diags)
        return diags

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _run_steps(
        self, result: ChallengeModel, steps: list[Step], diags: Diagnostics
    ) -> ChallengeModel:
        for field_name, step in steps:
            try:
                value, step_diags = step()
            except ReconciliationCancelled as exc:
                if exc.partial is not None:
                    result = result.model_copy(update={field_name: exc.partial})
                diags.add_error(
                    CANCELLED,
                    f"Stopped while reconciling {field_name} of challenge {result.id}; "
                    "changes already applied remotely are kept",
                )
                return result
            diags.extend(step_diags)
            result = result.model_copy(update={field_name: value})
        return result

    def _log_outcome(self, operation: str, challenge_id: int, diags: Diagnostics) -> None:
        extra = {
            "operation": operation,
            "challenge_id": challenge_id,
            "errors": len(diags.errors),
            "warnings": len(diags.warnings),
        }
        if diags.has_error():
            logger.error("Challenge %s finished with errors", operation, extra=extra)
        else:
            logger.info("Challenge %s finished", operation, extra=extra)


def describe_changes(old: ChallengeModel | None, new: ChallengeModel) -> list[str]:
    """List the actions a pass would take, without calling the API."""
    if old is None or old.id is None:
        actions = ["create challenge"]
        actions += [f"upload file {f.name}" for f in new.files]
        return actions

    actions: list[str] = []
    old_scalars = old.scalars()
    new_scalars = new.scalars()
    changed = [key for key in new_scalars if old_scalars.get(key) != new_scalars[key]]
    if changed:
        actions.append(f"update challenge attributes: {', '.join(changed)}")

    if old.tags != new.tags:
        actions.append("replace tags")
    if old.topics != new.topics:
        actions.append("replace topics")

    plan = plan_files(old.files, new.files)
    actions += [f"delete file {name}" for name in plan.removed]
    actions += [f"replace file {name}" for name in plan.changed]
    actions += [f"upload file {name}" for name in plan.added]

    if requirements_in_effect(old.requirements) != requirements_in_effect(new.requirements):
        actions.append("replace requirements")
    if old.flag != new.flag:
        actions.append("ignore flag change (flags are only set at creation)")
    return actions
