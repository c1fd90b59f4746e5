"""CTFd API Mock for Testing.

This module provides an in-memory implementation of the CTFd REST API
behind the RemoteGateway protocol, so that the lifecycle controller and the
strategies can be exercised without a running CTFd instance.

Key Features:
- In-memory state for challenges, tags, topics, files and flags
- Files listing that, like CTFd, cannot be filtered by challenge
- Call log for asserting exactly which remote calls were issued
- Failure injection per verb and kind

Usage:
    from ctfd_mock import MockCTFdState, MockGateway

    state = MockCTFdState()
    gateway = MockGateway(state)
    controller = ChallengeController(gateway, file_reader=lambda path: b"data")

    result, diags = controller.create_all(challenge)

    # Assert on mock state
    assert state.tag_values(result.id) == ["web"]
"""

from .factories import make_challenge
from .gateway import MockGateway
from .state import MockCTFdState

__all__ = [
    "MockCTFdState",
    "MockGateway",
    "make_challenge",
]
