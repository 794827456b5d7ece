from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass


class SelectorParseError(ValueError):
    """Raised when a label selector cannot be parsed locally."""


_KEY_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9._/-]*[A-Za-z0-9])?$")
_SET_RE = re.compile(r"^(?P<key>[^\s!=()]+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")
_EQ_RE = re.compile(r"^(?P<key>[^\s!=()]+)\s*(?P<op>==|=|!=)\s*(?P<value>[^\s!=(),]*)$")


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: frozenset[str] = frozenset()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == "exists":
            return self.key in labels
        if self.operator == "!exists":
            return self.key not in labels
        if self.operator in {"=", "==", "in"}:
            return self.key in labels and labels[self.key] in self.values
        # "!=" and "notin" also match objects that lack the key entirely.
        return labels.get(self.key) not in self.values


def _split_requirements(selector: str) -> list[str]:
    """Split on commas that are not inside a ``(...)`` value list."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in selector:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorParseError(f"Unbalanced parenthesis in selector {selector!r}")
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise SelectorParseError(f"Unbalanced parenthesis in selector {selector!r}")
    parts.append("".join(current))
    return parts


def _check_key(key: str, selector: str) -> str:
    if not _KEY_RE.match(key):
        raise SelectorParseError(f"Invalid label key {key!r} in selector {selector!r}")
    return key


@dataclass(frozen=True)
class LabelSelector:
    """Kubernetes label selector (equality- and set-based) evaluated in-process."""

    requirements: tuple[Requirement, ...]

    @classmethod
    def parse(cls, selector: str) -> LabelSelector:
        selector = selector.strip()
        if not selector:
            return cls(requirements=())

        requirements: list[Requirement] = []
        for raw in _split_requirements(selector):
            part = raw.strip()
            if not part:
                raise SelectorParseError(f"Empty requirement in selector {selector!r}")

            set_match = _SET_RE.match(part)
            if set_match:
                values = frozenset(
                    v.strip() for v in set_match.group("values").split(",") if v.strip()
                )
                requirements.append(
                    Requirement(
                        key=_check_key(set_match.group("key"), selector),
                        operator=set_match.group("op"),
                        values=values,
                    )
                )
                continue

            eq_match = _EQ_RE.match(part)
            if eq_match:
                requirements.append(
                    Requirement(
                        key=_check_key(eq_match.group("key"), selector),
                        operator=eq_match.group("op"),
                        values=frozenset({eq_match.group("value")}),
                    )
                )
                continue

            if part.startswith("!"):
                requirements.append(
                    Requirement(key=_check_key(part[1:].strip(), selector), operator="!exists")
                )
                continue

            requirements.append(Requirement(key=_check_key(part, selector), operator="exists"))

        return cls(requirements=tuple(requirements))

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(requirement.matches(labels) for requirement in self.requirements)
