"""
Object pattern matching for policy rules.

Policy objects are normalized paths that may contain:
- Parameters: ``/admin/products/:id`` matches exactly one non-empty segment
- Trailing wildcard: ``/admin/*`` matches any remainder below ``/admin/``
- Literals: every other segment must match verbatim

Parameter segments never span a ``/``, so segment counts must line up for
patterns without a wildcard.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern

_PARAM_SEGMENT = re.compile(r"^:[^/]+$")


@dataclass
class ObjectPattern:
    """A compiled policy object."""
    pattern: str
    regex: Optional[Pattern] = None
    parameter_names: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.regex = self._compile_pattern()

    def _compile_pattern(self) -> Pattern:
        parts = []
        for segment in self.pattern.split("/"):
            if segment == "*":
                parts.append(".*")
            elif _PARAM_SEGMENT.match(segment):
                self.parameter_names.append(segment[1:])
                parts.append("[^/]+")
            else:
                parts.append(re.escape(segment).replace(r"\*", ".*"))
        return re.compile("^" + "/".join(parts) + "$")

    @property
    def is_literal(self) -> bool:
        return "*" not in self.pattern and not self.parameter_names

    def matches(self, path: str) -> bool:
        if self.is_literal:
            return path == self.pattern
        return self.regex.match(path) is not None


class ObjectMatcher:
    """Compiles policy objects once and reuses them across checks."""

    def __init__(self, max_entries: int = 4096):
        self._compiled: Dict[str, ObjectPattern] = {}
        self._max_entries = max_entries

    def compile(self, pattern: str) -> ObjectPattern:
        compiled = self._compiled.get(pattern)
        if compiled is None:
            if len(self._compiled) >= self._max_entries:
                self._compiled.clear()
            compiled = ObjectPattern(pattern)
            self._compiled[pattern] = compiled
        return compiled

    def match(self, path: str, pattern: str) -> bool:
        """Return True when request object ``path`` satisfies ``pattern``."""
        return self.compile(pattern).matches(path)


def key_match(path: str, pattern: str) -> bool:
    """One-off match without a shared cache."""
    return ObjectPattern(pattern).matches(path)
