"""Git lookups used to correlate phases with commits."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger("gba")


def latest_commit_hash(repo_path: Path) -> str | None:
    """Return HEAD's commit hash (12 chars), or None outside a git repo."""
    try:
        result = subprocess.run(
            ["git", "log", "--format=%H", "-1"],
            cwd=repo_path,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git log failed: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()[:12] or None
