from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AtlasRule:
    """Structure-name rule: names matching ``include`` and not ``exclude`` get ``load``."""

    include: str
    exclude: Optional[str] = None
    load: bool = True

    def matches(self, name: str) -> bool:
        if not re.search(self.include, name, flags=re.IGNORECASE):
            return False
        if self.exclude and re.search(self.exclude, name, flags=re.IGNORECASE):
            return False
        return True


def should_load(name: str, rules: Optional[Sequence[AtlasRule]]) -> bool:
    """First matching rule decides; names matching no rule are loaded."""
    for rule in rules or ():
        if rule.matches(name):
            if not rule.load:
                logger.info("Structure %s matched exclusion list from atlas and will not be loaded", name)
            return rule.load
    return True


def parse_rules(entries: Iterable[Any]) -> List[AtlasRule]:
    """Build rules from config entries (mappings with include/exclude/load, or AtlasRule)."""
    rules: List[AtlasRule] = []
    for entry in entries or ():
        if isinstance(entry, AtlasRule):
            rules.append(entry)
            continue
        if not isinstance(entry, Mapping) or not entry.get("include"):
            raise ValueError(f"Atlas entry must be a mapping with an 'include' pattern, got {entry!r}")
        rule = AtlasRule(
            include=str(entry["include"]),
            exclude=str(entry["exclude"]) if entry.get("exclude") else None,
            load=bool(entry.get("load", True)),
        )
        # Fail early on malformed patterns
        re.compile(rule.include)
        if rule.exclude:
            re.compile(rule.exclude)
        rules.append(rule)
    return rules


__all__ = ["AtlasRule", "should_load", "parse_rules"]
