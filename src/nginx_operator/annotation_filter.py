"""
Label-selector expressions evaluated against Nginx annotations.

The operator can be restricted to Nginx resources whose annotations match a
selector such as ``tier=frontend,env in (prod,staging),!legacy``.
"""

import re
from dataclasses import dataclass, field

from nginx_operator.exceptions import InvalidSelectorError

_KEY = r"(?:[A-Za-z0-9][-A-Za-z0-9.]*/)?[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?"
_VALUE = r"(?:[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?)?"

_SET_RE = re.compile(rf"^(?P<key>{_KEY})\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")
_EQUALITY_RE = re.compile(rf"^(?P<key>{_KEY})\s*(?P<op>==|!=|=)\s*(?P<value>{_VALUE})$")
_NOT_EXISTS_RE = re.compile(rf"^!\s*(?P<key>{_KEY})$")
_EXISTS_RE = re.compile(rf"^(?P<key>{_KEY})$")
_VALUE_RE = re.compile(rf"^{_VALUE}$")


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: frozenset[str] = frozenset()

    def matches(self, labels: dict[str, str]) -> bool:
        if self.operator == "exists":
            return self.key in labels
        if self.operator == "!":
            return self.key not in labels
        if self.operator in ("=", "==", "in"):
            return self.key in labels and labels[self.key] in self.values
        # != and notin also match when the key is absent
        return labels.get(self.key) not in self.values


@dataclass(frozen=True)
class Selector:
    requirements: tuple[Requirement, ...] = field(default_factory=tuple)

    @property
    def empty(self) -> bool:
        return not self.requirements

    def matches(self, labels: dict[str, str] | None) -> bool:
        labels = labels or {}
        return all(requirement.matches(labels) for requirement in self.requirements)


def parse_selector(expression: str | None) -> Selector:
    """
    Parse a label selector expression.

    Raises:
        InvalidSelectorError: If any requirement is malformed
    """
    if expression is None or not expression.strip():
        return Selector()

    requirements = []
    for part in _split_requirements(expression):
        requirements.append(_parse_requirement(part.strip(), expression))
    return Selector(tuple(requirements))


def _split_requirements(expression: str) -> list[str]:
    parts = []
    depth = 0
    current = []
    for char in expression:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise InvalidSelectorError("unbalanced parenthesis", expression)
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise InvalidSelectorError("unbalanced parenthesis", expression)
    parts.append("".join(current))
    return parts


def _parse_requirement(part: str, expression: str) -> Requirement:
    if not part:
        raise InvalidSelectorError("empty requirement", expression)

    match = _SET_RE.match(part)
    if match:
        values = [value.strip() for value in match["values"].split(",")]
        if not values or any(not _VALUE_RE.match(value) for value in values):
            raise InvalidSelectorError(f"invalid values in {part!r}", expression)
        return Requirement(match["key"], match["op"], frozenset(values))

    match = _EQUALITY_RE.match(part)
    if match:
        return Requirement(match["key"], match["op"], frozenset([match["value"]]))

    match = _NOT_EXISTS_RE.match(part)
    if match:
        return Requirement(match["key"], "!")

    match = _EXISTS_RE.match(part)
    if match:
        return Requirement(match["key"], "exists")

    raise InvalidSelectorError(f"invalid requirement {part!r}", expression)


def should_manage(selector: Selector | None, annotations: dict[str, str] | None) -> bool:
    """An empty or absent filter manages every Nginx."""
    if selector is None or selector.empty:
        return True
    return selector.matches(annotations)
