"""Exclusion-rule matching over normalised relative paths."""
from __future__ import annotations

from collections.abc import Iterable, Iterator


def normalize_relative(path: str) -> str:
    """Return *path* with forward slashes and no leading/trailing separators.

    ``.`` segments are dropped. A ``..`` segment raises :class:`ValueError`
    because no relative path handled by deployctl may climb out of its root.
    """
    text = path.replace("\\", "/")
    segments: list[str] = []
    for segment in text.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise ValueError(f"Relative path must not contain '..': {path!r}")
        segments.append(segment)
    return "/".join(segments)


class PathFilter:
    """Match relative paths against an ordered set of exclusion rules.

    A path is excluded when it equals a rule or starts with ``rule + "/"``.
    Matching is exact-string and case-sensitive, so ``.git`` excludes
    ``.git/HEAD`` but neither ``.github/workflows`` nor ``.gitignore``.
    """

    __slots__ = ("_rules",)

    def __init__(self, rules: Iterable[str] = ()) -> None:
        """Normalise *rules*, dropping blanks and duplicates."""
        normalised: list[str] = []
        for rule in rules:
            value = normalize_relative(str(rule))
            if value and value not in normalised:
                normalised.append(value)
        self._rules = tuple(normalised)

    @property
    def rules(self) -> tuple[str, ...]:
        """Return the normalised rule list."""
        return self._rules

    def excluded(self, path: str) -> bool:
        """Return True when *path* falls under any exclusion rule."""
        candidate = normalize_relative(path)
        if not candidate:
            return False
        for rule in self._rules:
            if candidate == rule or candidate.startswith(rule + "/"):
                return True
        return False

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.excluded(path)

    def __iter__(self) -> Iterator[str]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"PathFilter({list(self._rules)!r})"

    def extended(self, rules: Iterable[str]) -> PathFilter:
        """Return a new filter carrying these rules followed by *rules*."""
        return PathFilter([*self._rules, *rules])

    def intersection(self, other: PathFilter | Iterable[str]) -> PathFilter:
        """Return a filter excluding only paths that both filters exclude.

        With prefix rules the overlap of two rules is always the narrower of
        the pair, so each rule survives when the other filter covers it.
        """
        other = as_filter(other)
        kept = [rule for rule in self._rules if other.excluded(rule)]
        kept.extend(rule for rule in other.rules if self.excluded(rule))
        return PathFilter(kept)


def as_filter(exclusions: PathFilter | Iterable[str] | None) -> PathFilter:
    """Coerce *exclusions* into a :class:`PathFilter`."""
    if isinstance(exclusions, PathFilter):
        return exclusions
    return PathFilter(exclusions or ())


__all__ = ["PathFilter", "as_filter", "normalize_relative"]
