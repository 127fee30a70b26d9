# triggers.py
from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Sequence

from .model import FORCE_ALL, TriggerFlags

logger = logging.getLogger(__name__)


class TriggerRuleEngine:
    """
    Turns matched categories into one boolean per declared pipeline area.

    An area is enabled when any of its trigger categories matched, or when the
    force-all pseudo-category is present. If nothing would be enabled and a
    fallback area is configured, the fallback is enabled so every run still
    produces a status.
    """

    def __init__(
        self,
        areas: Mapping[str, Sequence[str]],
        fallback_area: Optional[str] = None,
    ):
        if fallback_area is not None and fallback_area not in areas:
            raise ValueError(f"fallback area {fallback_area!r} is not a declared area")
        self.areas: Dict[str, tuple] = {name: tuple(cats) for name, cats in areas.items()}
        self.fallback_area = fallback_area

    def evaluate(self, categories: Iterable[str]) -> TriggerFlags:
        present = frozenset(categories)
        force_all = FORCE_ALL in present

        flags: Dict[str, bool] = {}
        for area, triggers in self.areas.items():
            flags[area] = force_all or any(c in present for c in triggers)

        if not any(flags.values()) and self.fallback_area is not None:
            logger.info("no area triggered; enabling fallback area %s", self.fallback_area)
            flags[self.fallback_area] = True

        return TriggerFlags(flags)
