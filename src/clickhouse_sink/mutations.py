"""
Event -> output document mapping and batch serialization.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping, Optional, Union

Event = Mapping[str, Any]
MutationRules = Mapping[str, Union[str, Iterable[str]]]


def coerce_event(obj: object) -> dict[str, Any]:
    """Accept dicts, pydantic models or plain objects."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, Mapping):
        return dict(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(vars(obj))


class Mutations:
    """Maps each output field to a source field, optionally rewritten by a regex.

    ``{"to": "from"}`` copies ``from``; ``{"to": ["from", pattern, repl]}``
    substitutes the first match of ``pattern`` in ``str(event["from"])``.
    Missing source fields are skipped. An empty rule set leaves events untouched.
    """

    def __init__(self, rules: Optional[MutationRules] = None):
        self._rules: list[tuple[str, str, Optional[re.Pattern], str]] = []
        for dst, source in (rules or {}).items():
            if isinstance(source, str):
                self._rules.append((dst, source, None, ""))
                continue
            src, pattern, replacement = list(source)
            self._rules.append((dst, src, re.compile(pattern), replacement))

    def __bool__(self) -> bool:
        return bool(self._rules)

    def apply(self, event: Event) -> Event:
        if not self._rules:
            return event
        out: dict[str, Any] = {}
        for dst, src, pattern, replacement in self._rules:
            if src not in event:
                continue
            value = event[src]
            if pattern is not None:
                value = pattern.sub(replacement, str(value), count=1)
            out[dst] = value
        return out


def serialize_batch(events: Iterable[object], mutations: Optional[Mutations] = None) -> bytes:
    """One JSON document per line, newline-terminated, in receipt order."""
    mutations = mutations or Mutations()
    lines = []
    for event in events:
        doc = mutations.apply(coerce_event(event))
        lines.append(json.dumps(doc, default=str, ensure_ascii=False))
        lines.append("\n")
    return "".join(lines).encode("utf-8")
