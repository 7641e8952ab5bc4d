"""Spec selection predicates.

Builds the predicates consumed by :class:`FilterMiddleware`: inclusion and
exclusion by tag, by a regular expression over the full spec description
(context path plus spec name, case-insensitive), or by any callable.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable

from specwright.runner.errors import ConfigError
from specwright.runner.models import SpecDefinition

SpecPredicate = Callable[[SpecDefinition], bool]


def tag_filter(
    include: Iterable[str] = (), exclude: Iterable[str] = ()
) -> SpecPredicate:
    """Match specs carrying any *include* tag and no *exclude* tag.

    Tags are compared against :attr:`SpecDefinition.all_tags`, so tags on
    enclosing contexts count.  An empty *include* admits every spec.
    """
    wanted = frozenset(include)
    unwanted = frozenset(exclude)

    def predicate(spec: SpecDefinition) -> bool:
        tags = spec.all_tags
        if unwanted & tags:
            return False
        return not wanted or bool(wanted & tags)

    return predicate


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise ConfigError(f"Invalid name pattern {pattern!r}: {exc}") from exc


def name_filter(
    pattern: str | None = None, exclude_pattern: str | None = None
) -> SpecPredicate:
    """Match specs whose full description matches *pattern*.

    Specs matching *exclude_pattern* are rejected even if they match
    *pattern*.

    Raises:
        ConfigError: If either pattern is not a valid regular expression.
    """
    include_re = _compile(pattern) if pattern else None
    exclude_re = _compile(exclude_pattern) if exclude_pattern else None

    def predicate(spec: SpecDefinition) -> bool:
        name = spec.full_description
        if exclude_re is not None and exclude_re.search(name):
            return False
        return include_re is None or include_re.search(name) is not None

    return predicate


def all_of(*predicates: SpecPredicate) -> SpecPredicate:
    """Combine *predicates*; a spec must satisfy every one."""

    def predicate(spec: SpecDefinition) -> bool:
        return all(p(spec) for p in predicates)

    return predicate


def build_predicate(
    include_tags: Iterable[str] = (),
    exclude_tags: Iterable[str] = (),
    name_pattern: str | None = None,
    exclude_name_pattern: str | None = None,
    predicate: SpecPredicate | None = None,
) -> SpecPredicate | None:
    """Combine every configured criterion, or return ``None`` if there are none."""
    parts: list[SpecPredicate] = []
    include_tags = list(include_tags)
    exclude_tags = list(exclude_tags)
    if include_tags or exclude_tags:
        parts.append(tag_filter(include_tags, exclude_tags))
    if name_pattern or exclude_name_pattern:
        parts.append(name_filter(name_pattern, exclude_name_pattern))
    if predicate is not None:
        parts.append(predicate)
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return all_of(*parts)
