from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from informer.src.models import ResourceWatchSpec, Scope
from informer.src.selectors import LabelSelector, SelectorParseError

PATTERN_METACHARACTERS = frozenset(".*+?^${}[]|()\\")


class ClientSidePolicy(str, Enum):
    NOT_NEEDED = "NotNeeded"
    UNSUPPORTED = "Unsupported"


def is_pattern(value: str) -> bool:
    """Return True if *value* contains any regex metacharacter."""
    return any(char in PATTERN_METACHARACTERS for char in value)


@dataclass(frozen=True)
class CompiledFilter:
    """Server-side and re-check filters derived from one :class:`ResourceWatchSpec`.

    Attributes:
        field_selector:  Exact-match selector pushed to the API server, or
                         ``None`` when no literal matcher is available.
        label_selector:  The spec's label selector, verbatim.
        client_side_policy: ``UNSUPPORTED`` when at least one matcher is a
                         pattern; the watch then runs broad and the pattern is
                         not evaluated by this package.
        reason:          Human-readable explanation for ``UNSUPPORTED``.
        literal_namespaces: Exact namespaces to re-check, or ``None`` for "any".
        literal_name:    Exact name to re-check, or ``None`` for "any".
        unsupported_matchers: The pattern matchers that could not be pushed down.
    """

    spec: ResourceWatchSpec
    field_selector: str | None
    label_selector: str | None
    client_side_policy: ClientSidePolicy
    reason: str | None
    literal_namespaces: frozenset[str] | None
    literal_name: str | None
    unsupported_matchers: tuple[str, ...]
    parsed_labels: LabelSelector | None

    @property
    def label_selector_evaluable(self) -> bool:
        return self.label_selector is None or self.parsed_labels is not None

    def matches(self, namespace: str, name: str, labels: Mapping[str, str]) -> bool:
        """Re-check an object against this filter.

        Literal matchers are compared exactly; pattern matchers let every
        object through. A label selector the local parser could not read is
        treated as matching, leaving validation to the API server.
        """
        if self.literal_namespaces is not None and namespace not in self.literal_namespaces:
            return False
        if self.literal_name is not None and name != self.literal_name:
            return False
        if self.parsed_labels is not None and not self.parsed_labels.matches(labels):
            return False
        return True


def compile_filter(spec: ResourceWatchSpec) -> CompiledFilter:
    """Decide which of *spec*'s constraints can be enforced by the API server."""
    unsupported: list[str] = []
    reasons: list[str] = []

    literal_namespaces: frozenset[str] | None = None
    if spec.scope is Scope.NAMESPACED:
        namespaces = [ns for ns in spec.namespaces if ns]
        pattern_namespaces = [ns for ns in namespaces if is_pattern(ns)]
        if pattern_namespaces:
            unsupported.extend(pattern_namespaces)
            reasons.append(
                "namespace matcher(s) "
                + ", ".join(repr(ns) for ns in pattern_namespaces)
                + " are patterns; watching all namespaces without a namespace filter"
            )
        elif namespaces and len(namespaces) == len(spec.namespaces):
            literal_namespaces = frozenset(namespaces)

    literal_name: str | None = None
    if spec.name:
        if is_pattern(spec.name):
            unsupported.append(spec.name)
            reasons.append(
                f"name matcher {spec.name!r} is a pattern; watching all names without a name filter"
            )
        else:
            literal_name = spec.name

    clauses: list[str] = []
    if literal_namespaces is not None and len(literal_namespaces) == 1:
        clauses.append(f"metadata.namespace={next(iter(literal_namespaces))}")
    if literal_name is not None:
        clauses.append(f"metadata.name={literal_name}")

    label_selector = spec.label_selector or None
    parsed_labels: LabelSelector | None = None
    if label_selector is not None:
        try:
            parsed_labels = LabelSelector.parse(label_selector)
        except SelectorParseError:
            parsed_labels = None

    return CompiledFilter(
        spec=spec,
        field_selector=",".join(clauses) or None,
        label_selector=label_selector,
        client_side_policy=ClientSidePolicy.UNSUPPORTED if unsupported else ClientSidePolicy.NOT_NEEDED,
        reason="; ".join(reasons) or None,
        literal_namespaces=literal_namespaces,
        literal_name=literal_name,
        unsupported_matchers=tuple(unsupported),
        parsed_labels=parsed_labels,
    )
