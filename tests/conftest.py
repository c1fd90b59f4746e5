"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for ctfd_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from ctfd_mock import MockCTFdState, MockGateway  # noqa: E402


@pytest.fixture
def mock_state() -> MockCTFdState:
    return MockCTFdState()


@pytest.fixture
def mock_gateway(mock_state: MockCTFdState) -> MockGateway:
    return MockGateway(mock_state)


@pytest.fixture
def file_contents() -> dict[str, bytes]:
    """Local file content by path, served by ``fake_reader``."""
    return {}


@pytest.fixture
def fake_reader(file_contents: dict[str, bytes]):
    """File reader that serves ``file_contents`` and fails like read_local_file."""
    from ctfd_operator.file_sync import FileReadError

    def reader(path: str) -> bytes:
        if path not in file_contents:
            raise FileReadError(f"Unable to read file at path '{path}': not a regular file")
        return file_contents[path]

    return reader
