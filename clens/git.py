"""Fallible boundary for shelling out to git.

Every call returns ``None`` (or an empty container upstream) instead of
raising, so a missing repository, a missing git binary or a hung process
never aborts a distill run.
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional, Union

from clens import config

logger = logging.getLogger("clens.git")


def run_git(args: list[str], cwd: Union[str, Path]) -> Optional[str]:
    """Run ``git <args>`` in ``cwd``; stdout on exit code 0, otherwise None."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
            timeout=config.GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git %s failed in %s: %s", " ".join(args), cwd, e)
        return None
    if result.returncode != 0:
        logger.debug("git %s exited %s: %s", " ".join(args), result.returncode, result.stderr.strip()[:200])
        return None
    return result.stdout


def has_head(cwd: Union[str, Path]) -> bool:
    return run_git(["rev-parse", "HEAD"], cwd) is not None
