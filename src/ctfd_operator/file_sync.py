"""Identity-diff reconciliation of challenge files.

Files are matched by their logical name, never by remote id: the declared
spec only knows names and local paths. Unchanged files are reused without a
remote call because CTFd offers no idempotent re-upload.

FAILURE POLICY:
- Deleting a removed or superseded file is best-effort (warning)
- Reading or uploading a file fails that file only (error); siblings continue
- The live version of a changed file is kept when its new source is unreadable
- A file whose stale version could not be deleted stays in the result so
  the next pass retries the cleanup
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .codec import file_from_api, file_upload_payload, remote_id
from .config import DEFAULT_MAX_UPLOAD_SIZE_BYTES
from .diagnostics import Diagnostics
from .gateway import (
    GatewayError,
    ReconciliationCancelled,
    RemoteGateway,
    SubresourceKind,
    UnexpectedResponseError,
)
from .models import FileModel
from .strategies import CLIENT_ERROR, UNEXPECTED_RESPONSE, SubresourceStrategy

logger = logging.getLogger(__name__)

FileReader = Callable[[str], bytes]


class FileReadError(Exception):
    """Raised when a declared local file cannot be used as upload content."""

    pass


def read_local_file(path: str, *, max_size_bytes: int = DEFAULT_MAX_UPLOAD_SIZE_BYTES) -> bytes:
    """Read upload content from disk.

    Raises:
        FileReadError: If the path is missing, not a regular file, too large,
            or unreadable.
    """
    file_path = Path(path)
    try:
        if not file_path.is_file():
            raise FileReadError(f"Unable to read file at path '{path}': not a regular file")
        file_size = file_path.stat().st_size
    except OSError as e:
        raise FileReadError(f"Unable to read file at path '{path}': {e}") from e

    if file_size > max_size_bytes:
        raise FileReadError(
            f"File at path '{path}' exceeds maximum upload size of {max_size_bytes} bytes"
        )

    try:
        return file_path.read_bytes()
    except OSError as e:
        raise FileReadError(f"Unable to read file at path '{path}': {e}") from e


def is_unchanged(old: FileModel, new: FileModel) -> bool:
    """An applied file is reused when its declared source path is the same."""
    return old.id is not None and old.path is not None and old.path == new.path


@dataclass
class FilePlan:
    """Partition of old/new file collections by logical name."""

    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)


def plan_files(old: list[FileModel], new: list[FileModel]) -> FilePlan:
    old_by_name = {f.name: f for f in old}
    new_by_name = {f.name: f for f in new}
    plan = FilePlan()

    for name in old_by_name:
        if name not in new_by_name:
            plan.removed.append(name)

    for name, new_file in new_by_name.items():
        old_file = old_by_name.get(name)
        if old_file is None or old_file.id is None:
            plan.added.append(name)
        elif is_unchanged(old_file, new_file):
            plan.unchanged.append(name)
        else:
            plan.changed.append(name)

    return plan


class FileSyncStrategy(SubresourceStrategy[list[FileModel]]):
    """Minimal create/delete sync of files keyed by name."""

    kind = SubresourceKind.FILE

    def __init__(self, gateway: RemoteGateway, reader: FileReader = read_local_file) -> None:
        super().__init__(gateway)
        self._reader = reader

    def create(
        self, new: list[FileModel], challenge_id: int
    ) -> tuple[list[FileModel], Diagnostics]:
        return self.reconcile([], new, challenge_id)

    def reconcile(
        self, old: list[FileModel], new: list[FileModel], challenge_id: int
    ) -> tuple[list[FileModel], Diagnostics]:
        diags = Diagnostics()
        plan = plan_files(old, new)
        old_by_name = {f.name: f for f in old}
        new_by_name = {f.name: f for f in new}

        # Old entries still live remotely; drained as they are deleted or reused
        live_old = {name: f for name, f in old_by_name.items() if f.id is not None}
        result: list[FileModel] = []

        try:
            for name in plan.removed:
                old_file = old_by_name[name]
                if old_file.id is None:
                    continue
                if self._delete(old_file, diags, "Unable to delete file"):
                    live_old.pop(name)

            for name, new_file in new_by_name.items():
                if name in plan.unchanged:
                    result.append(live_old.pop(name))
                    continue

                # The live version is only replaced once the new content is in hand
                content = self._load(new_file, diags)
                if content is None:
                    continue

                stale_left = False
                if name in plan.changed:
                    old_file = live_old[name]
                    stale_left = not self._delete(
                        old_file, diags, "Unable to delete old version of file"
                    )

                uploaded = self._upload(new_file, content, challenge_id, diags)
                if uploaded is not None:
                    result.append(uploaded)
                    live_old.pop(name, None)
                elif not stale_left:
                    live_old.pop(name, None)
        except ReconciliationCancelled as exc:
            exc.partial = result + list(live_old.values())
            raise

        # Removed files whose deletion failed are still live
        result.extend(live_old.values())

        logger.info(
            "Synchronized files",
            extra={
                "challenge_id": challenge_id,
                "removed": len(plan.removed),
                "unchanged": len(plan.unchanged),
                "changed": len(plan.changed),
                "added": len(plan.added),
            },
        )
        return result, diags

    def read(
        self, challenge_id: int, previous: list[FileModel] | None
    ) -> tuple[list[FileModel], Diagnostics]:
        """List challenge files.

        The files API cannot filter by challenge. With a previous snapshot,
        only files whose id it knows are kept and their write-only path is
        carried over. Without one (import), every listed file is returned
        and named after its storage location.
        """
        diags = Diagnostics()
        try:
            entries = self._gateway.list(self.kind, challenge_id)
        except GatewayError as e:
            diags.add_error(
                CLIENT_ERROR,
                f"Unable to read files for challenge {challenge_id}: {e}",
            )
            return list(previous or []), diags

        known = {f.id: f for f in previous or [] if f.id is not None}
        result: list[FileModel] = []
        for entry in entries:
            try:
                entry_id = remote_id(entry)
                if previous is None:
                    result.append(file_from_api(entry, challenge_id=challenge_id))
                    continue
                prior = known.pop(entry_id, None)
                if prior is None:
                    continue
                parsed = file_from_api(
                    entry, challenge_id=challenge_id, name=prior.name, path=prior.path
                )
                result.append(parsed.model_copy(update={"location": prior.location}))
            except UnexpectedResponseError as e:
                diags.add_error(UNEXPECTED_RESPONSE, f"File of challenge {challenge_id}: {e}")

        for missing in known.values():
            diags.add_warning(
                "File Missing",
                f"File '{missing.name}' (ID: {missing.id}) is no longer present in CTFd",
            )
        return result, diags

    def _delete(self, file: FileModel, diags: Diagnostics, summary: str) -> bool:
        if file.id is None:
            return True
        try:
            self._gateway.delete(self.kind, file.id)
        except GatewayError as e:
            diags.add_warning(
                "File Delete Warning",
                f"{summary} '{file.name}' (ID: {file.id}): {e}",
            )
            return False
        return True

    def _load(self, file: FileModel, diags: Diagnostics) -> bytes | None:
        if file.path is None:
            diags.add_error(
                "Invalid File Configuration",
                f"File '{file.name}' must have a valid 'path' attribute for upload",
            )
            return None

        try:
            return self._reader(file.path)
        except FileReadError as e:
            diags.add_error("File Read Error", str(e))
            return None

    def _upload(
        self, file: FileModel, content: bytes, challenge_id: int, diags: Diagnostics
    ) -> FileModel | None:
        try:
            uploaded = self._gateway.create(
                self.kind, challenge_id, file_upload_payload(file, content)
            )
        except GatewayError as e:
            diags.add_error(
                CLIENT_ERROR,
                f"Unable to upload file '{file.name}' for challenge {challenge_id}: {e}",
            )
            return None

        # CTFd returns a list of uploaded files; one file is sent per call
        if not uploaded:
            diags.add_error(UNEXPECTED_RESPONSE, f"No file returned after upload for '{file.name}'")
            return None

        try:
            result = file_from_api(
                uploaded[0], challenge_id=challenge_id, name=file.name, path=file.path
            )
        except UnexpectedResponseError as e:
            diags.add_error(UNEXPECTED_RESPONSE, f"Upload of '{file.name}': {e}")
            return None
        return result.model_copy(update={"location": file.location})
