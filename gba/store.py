"""State persistence: one state.yml per feature under .gba/features/."""

from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import yaml
from pydantic import ValidationError

from .errors import (
    ConcurrentModificationError,
    ConfigError,
    FeatureLockedError,
    FeatureNotFoundError,
    PersistenceError,
    StateCorruptionError,
    StateNotFoundError,
)
from .models import FeatureState

logger = logging.getLogger("gba")

STATE_FILE = "state.yml"
LOCK_FILE = ".lock"

DESIGN_TEMPLATE = """\
# Feature: {slug}

## Overview

{description}

## Requirements

- [ ] Add requirements

## Design

### Architecture

Describe the architecture.

### Implementation Plan

1. Add implementation steps

## Files to Modify

- List files to create or modify

## Testing Strategy

- Describe the testing approach

## Notes

- Created: {created}
"""

VERIFICATION_TEMPLATE = """\
# Verification Criteria: {slug}

## Acceptance Criteria

- [ ] Add acceptance criteria

## Test Cases

### Unit Tests

- [ ] Add unit test cases

### Integration Tests

- [ ] Add integration test cases
"""


def normalize_slug(text: str) -> str:
    """Lower-case, turn anything non-alphanumeric into single hyphens."""
    cleaned = re.sub(r"[^0-9a-z]+", "-", text.lower()).strip("-")
    if not cleaned:
        raise ConfigError(f"Invalid feature slug: '{text}'")
    return cleaned


def _lock_owner(lock_path: Path) -> int:
    """Pid recorded by the lock holder, 0 if it has not written one yet."""
    try:
        return int(lock_path.read_text().strip() or 0)
    except (OSError, ValueError):
        return 0


class StateStore:
    """Loads and saves FeatureState with atomic replace-on-write.

    Every successful save is a durability checkpoint. Saves are checked
    against the on-disk revision so that two writers cannot silently
    overwrite each other.
    """

    def __init__(self, gba_dir: Path):
        self.gba_dir = gba_dir
        self.features_dir = gba_dir / "features"

    def feature_dir(self, key: str) -> Path:
        return self.features_dir / key

    def state_path(self, key: str) -> Path:
        return self.feature_dir(key) / STATE_FILE

    # --- Load / save ---

    def load(self, key: str) -> FeatureState:
        path = self.state_path(key)
        try:
            raw_text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StateNotFoundError(f"No state for feature {key} ({path})") from None
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

        try:
            raw = yaml.safe_load(raw_text)
        except yaml.YAMLError as e:
            raise StateCorruptionError(f"{path} is not valid YAML: {e}") from e
        if not isinstance(raw, dict):
            raise StateCorruptionError(f"{path} does not contain a mapping")

        try:
            return FeatureState.model_validate(raw)
        except ValidationError as e:
            raise StateCorruptionError(f"{path} failed validation: {e}") from e

    def save(self, key: str, state: FeatureState) -> None:
        """Atomically write state.yml (write tmp, fsync, replace).

        Raises ConcurrentModificationError if the file on disk is not the
        revision this state was loaded from.
        """
        path = self.state_path(key)
        on_disk = self._disk_revision(path)
        if on_disk is not None and on_disk != state.revision:
            raise ConcurrentModificationError(
                f"{path} is at revision {on_disk}, expected {state.revision}"
            )

        data = state.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["revision"] = state.revision + 1
        content = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

        tmp_path: Path | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = Path(tmp.name)
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write {path}: {e}") from e

        state.revision += 1

    @staticmethod
    def _disk_revision(path: Path) -> int | None:
        if not path.exists():
            return None
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise PersistenceError(f"Cannot verify revision of {path}: {e}") from e
        if not isinstance(raw, dict):
            return 0
        return int(raw.get("revision", 0))

    # --- Run lock ---

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """Exclusive per-feature run lock, held for the duration of a run.

        `flock` on a persistent `.lock` file; the kernel drops it when the
        holder exits, so a crashed run never leaves a stale lock behind.
        The file only records the holder's pid for error messages.
        """
        lock_path = self.feature_dir(key) / LOCK_FILE
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise PersistenceError(f"Failed to open {lock_path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            raise FeatureLockedError(key, _lock_owner(lock_path)) from None

        try:
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode())
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    # --- Workspace ---

    def next_feature_id(self) -> str:
        """Zero-padded id one above the highest existing id."""
        max_id = 0
        if self.features_dir.exists():
            for entry in self.features_dir.iterdir():
                prefix = entry.name.split("_", 1)[0]
                if prefix.isdigit():
                    max_id = max(max_id, int(prefix))
        return f"{max_id + 1:04d}"

    def create(
        self,
        slug: str,
        phase_names: Iterable[str],
        description: str | None = None,
    ) -> FeatureState:
        """Plan a new feature: directory, spec stubs and a Planned state."""
        slug = normalize_slug(slug)
        for existing in self.list_keys():
            if existing.split("_", 1)[-1] == slug:
                raise ConfigError(f"Feature '{existing}' already exists.")

        state = FeatureState.new(self.next_feature_id(), slug, phase_names)
        feature_dir = self.feature_dir(state.key)
        try:
            (feature_dir / "specs").mkdir(parents=True)
            (feature_dir / "docs").mkdir()
            (feature_dir / "specs" / "design.md").write_text(DESIGN_TEMPLATE.format(
                slug=slug,
                description=description or "Add a description.",
                created=datetime.now().strftime("%Y-%m-%d %H:%M"),
            ))
            (feature_dir / "specs" / "verification.md").write_text(
                VERIFICATION_TEMPLATE.format(slug=slug)
            )
        except OSError as e:
            raise PersistenceError(f"Failed to create {feature_dir}: {e}") from e
        self.save(state.key, state)
        return state

    def list_keys(self) -> list[str]:
        if not self.features_dir.exists():
            return []
        return sorted(p.name for p in self.features_dir.iterdir() if p.is_dir())

    def find(self, ref: str) -> str:
        """Resolve an exact key, an id prefix or a slug suffix to a key."""
        keys = self.list_keys()
        if not keys:
            raise FeatureNotFoundError("No features found. Run 'gba plan <feature-slug>' first.")
        if ref in keys:
            return ref
        for key in keys:
            feature_id, _, slug = key.partition("_")
            if ref == slug or ref == feature_id:
                return key
        raise FeatureNotFoundError(f"Feature '{ref}' not found.")

    def list_features(self) -> list[FeatureState]:
        states = []
        for key in self.list_keys():
            try:
                states.append(self.load(key))
            except (StateNotFoundError, StateCorruptionError) as e:
                logger.warning(f"Skipping {key}: {e}")
        return states
