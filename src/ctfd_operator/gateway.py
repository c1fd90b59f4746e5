"""Remote gateway to the CTFd REST API.

The gateway exposes the verbs the reconciliation strategies need, per
subresource kind, and owns no reconciliation logic. CTFdGateway talks to a
real instance through httpx; tests substitute an in-memory implementation of
the RemoteGateway protocol.

API QUIRKS:
- Every response is wrapped as {"success": bool, "data": ...}
- The files listing cannot be filtered by challenge
- There is no "list flags of a challenge" call this operator relies on
- Topics are deleted by their challenge-topic association id

SECURITY: Timeouts are enforced on every call to prevent indefinite hangs.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Protocol

import httpx

from .config import Config

logger = logging.getLogger(__name__)

RemoteEntry = dict[str, Any]

FILE_LIST_TYPE = "challenge"
TOPIC_TARGET_TYPE = "challenge"


class SubresourceKind(str, Enum):
    """Subresource collections owned by a challenge."""

    TAG = "tag"
    TOPIC = "topic"
    FILE = "file"
    FLAG = "flag"
    REQUIREMENTS = "requirements"


class GatewayError(Exception):
    """Raised when a remote call fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFoundError(GatewayError):
    """Raised when the API answers 404 for the requested entity."""

    pass


class UnexpectedResponseError(GatewayError):
    """Raised when a call succeeds but returns a shape that cannot be used."""

    pass


class UnsupportedOperationError(Exception):
    """Raised for verbs the API does not offer for a kind.

    A programming error rather than a remote failure, hence not a
    GatewayError.
    """

    pass


class ReconciliationCancelled(Exception):
    """Raised instead of issuing a remote call once a pass is cancelled.

    Strategies attach the live view they had reached as ``partial`` before
    re-raising, so that the controller can still return everything that was
    committed remotely.
    """

    def __init__(self, message: str = "reconciliation cancelled", partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


class RemoteGateway(Protocol):
    """Verbs consumed by the lifecycle controller and the strategies."""

    def create_challenge(self, payload: dict[str, Any]) -> RemoteEntry: ...

    def get_challenge(self, challenge_id: int) -> RemoteEntry: ...

    def patch_challenge(self, challenge_id: int, payload: dict[str, Any]) -> RemoteEntry: ...

    def delete_challenge(self, challenge_id: int) -> None: ...

    def create(
        self, kind: SubresourceKind, challenge_id: int, payload: dict[str, Any]
    ) -> list[RemoteEntry]: ...

    def list(self, kind: SubresourceKind, challenge_id: int) -> list[RemoteEntry]: ...

    def delete(self, kind: SubresourceKind, remote_id: int) -> None: ...


def _as_entries(data: Any) -> list[RemoteEntry]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    raise UnexpectedResponseError(f"expected an object or a list, got {type(data).__name__}")


class CTFdGateway:
    """Synchronous CTFd API client."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root, e.g. https://ctf.example.com/api/v1
            api_key: Admin access token.
            timeout_seconds: Timeout applied to every request.
            transport: Optional transport override (used by tests).
        """
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Token {api_key}",
                "Accept": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> CTFdGateway:
        return cls(
            config.api_base_url,
            config.api_key,
            timeout_seconds=config.request_timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> CTFdGateway:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any:
        """Issue one request and unwrap the CTFd envelope.

        Raises:
            RemoteNotFoundError: On HTTP 404.
            GatewayError: On transport failures, other HTTP errors, or
                ``success: false``.
            UnexpectedResponseError: On a body that is not JSON.
        """
        logger.debug("CTFd request", extra={"method": method, "path": path})
        try:
            response = self._client.request(
                method, path, params=params, json=json, data=data, files=files
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404:
            raise RemoteNotFoundError(f"{method} {path} returned 404", status_code=404)
        if response.is_error:
            raise GatewayError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as e:
            raise UnexpectedResponseError(f"{method} {path} returned invalid JSON") from e

        if not isinstance(body, dict) or not body.get("success", False):
            errors = body.get("errors") if isinstance(body, dict) else body
            raise GatewayError(
                f"{method} {path} reported failure: {errors}",
                status_code=response.status_code,
            )
        return body.get("data")

    # -------------------------------------------------------------------------
    # Challenge
    # -------------------------------------------------------------------------

    def create_challenge(self, payload: dict[str, Any]) -> RemoteEntry:
        data = self._request("POST", "/challenges", json=payload)
        if not isinstance(data, dict):
            raise UnexpectedResponseError("challenge creation returned no challenge")
        return data

    def get_challenge(self, challenge_id: int) -> RemoteEntry:
        data = self._request("GET", f"/challenges/{challenge_id}")
        if not isinstance(data, dict):
            raise UnexpectedResponseError(f"challenge {challenge_id} returned no data")
        return data

    def patch_challenge(self, challenge_id: int, payload: dict[str, Any]) -> RemoteEntry:
        data = self._request("PATCH", f"/challenges/{challenge_id}", json=payload)
        return data if isinstance(data, dict) else {}

    def delete_challenge(self, challenge_id: int) -> None:
        self._request("DELETE", f"/challenges/{challenge_id}")

    # -------------------------------------------------------------------------
    # Subresources
    # -------------------------------------------------------------------------

    def create(
        self, kind: SubresourceKind, challenge_id: int, payload: dict[str, Any]
    ) -> list[RemoteEntry]:
        match kind:
            case SubresourceKind.TAG:
                data = self._request("POST", "/tags", json=payload)
            case SubresourceKind.TOPIC:
                data = self._request("POST", "/topics", json=payload)
            case SubresourceKind.FLAG:
                data = self._request("POST", "/flags", json=payload)
            case SubresourceKind.FILE:
                data = self._request(
                    "POST",
                    "/files",
                    data={
                        "challenge": str(challenge_id),
                        "type": payload["type"],
                        "location": payload["location"],
                    },
                    files={"file": (payload["name"], payload["content"])},
                )
            case _:
                raise UnsupportedOperationError(f"cannot create {kind.value} entries")
        return _as_entries(data)

    def list(self, kind: SubresourceKind, challenge_id: int) -> list[RemoteEntry]:
        match kind:
            case SubresourceKind.TAG:
                data = self._request("GET", f"/challenges/{challenge_id}/tags")
            case SubresourceKind.TOPIC:
                data = self._request("GET", f"/challenges/{challenge_id}/topics")
            case SubresourceKind.REQUIREMENTS:
                data = self._request("GET", f"/challenges/{challenge_id}/requirements")
            case SubresourceKind.FILE:
                # The files API has no challenge filter
                data = self._request("GET", "/files", params={"type": FILE_LIST_TYPE})
            case _:
                raise UnsupportedOperationError(f"cannot list {kind.value} entries")
        return _as_entries(data)

    def delete(self, kind: SubresourceKind, remote_id: int) -> None:
        match kind:
            case SubresourceKind.TAG:
                self._request("DELETE", f"/tags/{remote_id}")
            case SubresourceKind.TOPIC:
                self._request(
                    "DELETE",
                    "/topics",
                    params={"type": TOPIC_TARGET_TYPE, "target_id": remote_id},
                )
            case SubresourceKind.FILE:
                self._request("DELETE", f"/files/{remote_id}")
            case SubresourceKind.FLAG:
                self._request("DELETE", f"/flags/{remote_id}")
            case _:
                raise UnsupportedOperationError(f"cannot delete {kind.value} entries")


class CancellableGateway:
    """Gateway wrapper that refuses new calls once a pass is cancelled.

    Calls already in flight are not interrupted and nothing committed
    remotely is undone.
    """

    def __init__(self, inner: RemoteGateway, cancel_event: threading.Event) -> None:
        self._inner = inner
        self._cancel_event = cancel_event

    def _check(self) -> None:
        if self._cancel_event.is_set():
            raise ReconciliationCancelled()

    def create_challenge(self, payload: dict[str, Any]) -> RemoteEntry:
        self._check()
        return self._inner.create_challenge(payload)

    def get_challenge(self, challenge_id: int) -> RemoteEntry:
        self._check()
        return self._inner.get_challenge(challenge_id)

    def patch_challenge(self, challenge_id: int, payload: dict[str, Any]) -> RemoteEntry:
        self._check()
        return self._inner.patch_challenge(challenge_id, payload)

    def delete_challenge(self, challenge_id: int) -> None:
        self._check()
        self._inner.delete_challenge(challenge_id)

    def create(
        self, kind: SubresourceKind, challenge_id: int, payload: dict[str, Any]
    ) -> list[RemoteEntry]:
        self._check()
        return self._inner.create(kind, challenge_id, payload)

    def list(self, kind: SubresourceKind, challenge_id: int) -> list[RemoteEntry]:
        self._check()
        return self._inner.list(kind, challenge_id)

    def delete(self, kind: SubresourceKind, remote_id: int) -> None:
        self._check()
        self._inner.delete(kind, remote_id)
