# changes.py
# Classifies changed paths into categories using path-rule globs.
#
# Glob dialect (case-sensitive):
#   *    any run of characters inside one path segment
#   ?    one character inside a path segment
#   **   any number of whole segments, including none
#   a trailing "/" means "everything under this directory"
#   a pattern with no inner "/" matches at any depth ("*.py", "docs/")
#   a leading "/" or any inner "/" anchors the pattern at the repo root
from __future__ import annotations

import logging
import re
from typing import Dict, FrozenSet, List, Pattern, Sequence, Tuple

from .errors import PatternError
from .model import FORCE_ALL, ChangeSet, PathRule

logger = logging.getLogger(__name__)


def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile one path-rule glob to a regex. Raises PatternError if malformed."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise PatternError(str(pattern), "pattern is empty")
    if pattern != pattern.strip():
        raise PatternError(pattern, "leading or trailing whitespace")
    if "\\" in pattern:
        raise PatternError(pattern, "use '/' as the path separator")

    body = pattern
    anchored = False
    if body.startswith("/"):
        anchored = True
        body = body[1:]
    if "/" in body.rstrip("/"):
        anchored = True
    if body.endswith("/"):
        body += "**"

    segments = body.split("/")
    if any(seg == "" for seg in segments):
        raise PatternError(pattern, "empty path segment")

    parts: List[str] = []
    for i, seg in enumerate(segments):
        last = i == len(segments) - 1
        if seg == "**":
            parts.append(".*" if last else "(?:[^/]+/)*")
            continue
        if "**" in seg:
            raise PatternError(pattern, "'**' must be a whole path segment")
        rx = "".join(
            "[^/]*" if c == "*" else "[^/]" if c == "?" else re.escape(c)
            for c in seg
        )
        parts.append(rx if last else rx + "/")

    regex = "".join(parts)
    if not anchored:
        regex = "(?:.*/)?" + regex
    return re.compile(regex)


def glob_match(path: str, pattern: str) -> bool:
    return compile_pattern(pattern).fullmatch(path) is not None


class ChangeSetAnalyzer:
    """
    Maps a ChangeSet to the set of matched category names.

    Patterns are compiled up front, so a malformed rule fails at construction
    (startup) and never during analysis.
    """

    def __init__(self, rules: Sequence[PathRule]):
        self._rules: List[Tuple[str, List[Pattern[str]]]] = [
            (rule.category, [compile_pattern(p) for p in rule.patterns])
            for rule in rules
        ]

    @property
    def categories(self) -> List[str]:
        return [category for category, _ in self._rules]

    def categorize(self, path: str) -> List[str]:
        return [
            category
            for category, patterns in self._rules
            if any(rx.fullmatch(path) for rx in patterns)
        ]

    def analyze(self, changes: ChangeSet) -> FrozenSet[str]:
        if len(changes) == 0:
            logger.debug("empty change set -> %s", FORCE_ALL)
            return frozenset({FORCE_ALL})

        matched = set()
        for path in changes:
            hits = self.categorize(path)
            if not hits:
                logger.debug("path %s matched no category", path)
            matched.update(hits)
        return frozenset(matched)

    def explain(self, changes: ChangeSet) -> Dict[str, List[str]]:
        """Per-path categories, for plan printing."""
        return {path: self.categorize(path) for path in changes}
