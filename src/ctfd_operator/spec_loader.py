"""Challenge spec and state snapshot loading with validation.

Specs are YAML files, one challenge per file, named ``<name>.yaml`` in the
specs directory. State snapshots are the last-applied ChallengeModel of each
challenge, stored as JSON under the same name in the state directory.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, MAX_STATE_FILE_SIZE_BYTES
from .models import ChallengeModel

logger = logging.getLogger(__name__)

SPEC_SUFFIX = ".yaml"
STATE_SUFFIX = ".json"


class SpecLoadError(Exception):
    """Raised when spec or state loading or validation fails."""

    pass


def _read_limited(path: Path, max_size: int, label: str) -> str:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {label} file {path}: {e}") from e

    if file_size > max_size:
        raise SpecLoadError(
            f"{label.capitalize()} file exceeds maximum size of {max_size} bytes: {path}"
        )

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {label} file {path}: {e}") from e


def _validate(data: dict[str, Any], path: Path) -> ChallengeModel:
    try:
        return ChallengeModel.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def discover_specs(specs_dir: Path) -> list[str]:
    """Names of all challenge specs in the directory, sorted."""
    return sorted(p.stem for p in specs_dir.glob(f"*{SPEC_SUFFIX}") if p.is_file())


def load_spec(specs_dir: Path, name: str) -> ChallengeModel:
    """Load and validate a challenge spec from YAML.

    Relative file paths are resolved against the directory of the spec file,
    so that specs can be applied from any working directory.

    Args:
        specs_dir: Directory containing spec files.
        name: The challenge spec name (file stem).

    Returns:
        Validated challenge declaration.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    spec_path = specs_dir / f"{name}{SPEC_SUFFIX}"

    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    content = _read_limited(spec_path, MAX_SPEC_FILE_SIZE_BYTES, "spec")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    spec = _validate(spec_data, spec_path)
    if spec.id is not None:
        raise SpecLoadError(f"Spec must not set a remote id: {spec_path}")

    base_dir = spec_path.parent
    files = [
        f.model_copy(update={"path": str(base_dir / f.path)})
        if f.path is not None and not Path(f.path).is_absolute()
        else f
        for f in spec.files
    ]
    spec = spec.model_copy(update={"files": files})

    logger.info("Loaded spec for challenge '%s' from %s", name, spec_path)
    return spec


def state_path(state_dir: Path, name: str) -> Path:
    return state_dir / f"{name}{STATE_SUFFIX}"


def load_state(state_dir: Path, name: str) -> ChallengeModel | None:
    """Load the last-applied snapshot of a challenge.

    Returns:
        The snapshot, or None when the challenge was never applied.

    Raises:
        SpecLoadError: If the state file exists but cannot be used.
    """
    path = state_path(state_dir, name)
    if not path.exists():
        return None

    content = _read_limited(path, MAX_STATE_FILE_SIZE_BYTES, "state")
    try:
        raw_data = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"State file must be a JSON object: {path}")

    state = _validate(raw_data, path)
    if state.id is None:
        raise SpecLoadError(f"State file has no challenge id: {path}")
    return state


def save_state(state_dir: Path, name: str, snapshot: ChallengeModel | None) -> None:
    """Persist the snapshot, or remove the state file when there is none.

    The file is written to a temporary sibling first and moved into place,
    so an interrupted write never truncates the previous snapshot.
    """
    path = state_path(state_dir, name)
    if snapshot is None:
        path.unlink(missing_ok=True)
        logger.info("Removed state for challenge '%s'", name)
        return

    state_dir.mkdir(parents=True, exist_ok=True)
    content = json.dumps(snapshot.model_dump(mode="json", by_alias=True), indent=2)
    tmp_path = path.with_suffix(f"{STATE_SUFFIX}.tmp")
    try:
        tmp_path.write_text(content + "\n", encoding="utf-8")
        tmp_path.replace(path)
    except OSError as e:
        raise SpecLoadError(f"Failed to write state file {path}: {e}") from e
    logger.info("Saved state for challenge '%s' to %s", name, path)
