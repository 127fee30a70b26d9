# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises CalledProcessError when git exits non-zero, FileNotFoundError when
    git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """Current branch name, or the HEAD sha when detached."""
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return head_sha(cwd) if ref == "HEAD" else ref


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repository root."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)


def collect_changes(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Changed paths for a local run.

    Dirty tree: staged + unstaged + untracked files.
    Clean tree: HEAD against its merge-base with `compare_ref`, falling back to
    HEAD~1 when the ref is unavailable. If there is no parent commit either,
    the change set is empty, which the analyzer treats as "run everything".
    """
    root = repo_root(cwd)
    if is_dirty(root):
        return working_tree_changes(root)

    try:
        base = merge_base(compare_ref, cwd=root)
    except subprocess.CalledProcessError:
        logger.info("no merge-base with %s; comparing against HEAD~1", compare_ref)
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd=root)
    except subprocess.CalledProcessError:
        logger.info("no parent commit to diff against; treating change set as empty")
        return []
