from __future__ import annotations

import itertools
import re
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from matrixci.errors import ConfigError

AxisSet = Mapping[str, Sequence[str]]

_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class Environment:
    """One concrete combination of axis values.

    Identity is the (axis, value) pairs; `index` is the position in the
    expansion order and only drives report ordering.
    """

    axes: Tuple[Tuple[str, str], ...]
    index: int = field(default=0, compare=False)

    def __getitem__(self, axis: str) -> str:
        for name, value in self.axes:
            if name == axis:
                return value
        raise KeyError(axis)

    def as_dict(self) -> Dict[str, str]:
        return dict(self.axes)

    @property
    def key(self) -> str:
        return ",".join(f"{name}={value}" for name, value in self.axes)

    @property
    def slug(self) -> str:
        raw = "-".join(value for _, value in self.axes) or "default"
        return _SLUG_RE.sub("_", raw)

    def matches(self, partial: Mapping[str, str]) -> bool:
        values = self.as_dict()
        return all(values.get(k) == v for k, v in partial.items())

    def __str__(self) -> str:
        return self.key


def validate_axes(axes: AxisSet) -> Dict[str, Tuple[str, ...]]:
    """Return a normalized copy of the axis set or raise ConfigError."""

    if not axes:
        raise ConfigError("axis set must declare at least one axis")

    out: Dict[str, Tuple[str, ...]] = {}
    for name, values in axes.items():
        if not isinstance(name, str) or not name.strip():
            raise ConfigError(f"invalid axis name: {name!r}")
        if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
            raise ConfigError(f"axis '{name}' must be a list of values")
        normalized = tuple(str(v) for v in values)
        if not normalized:
            raise ConfigError(f"axis '{name}' has no values")
        dupes = sorted({v for v in normalized if normalized.count(v) > 1})
        if dupes:
            raise ConfigError(f"axis '{name}' has duplicate values: {dupes}")
        out[name] = normalized
    return out


def expand(
    axes: AxisSet,
    *,
    exclude: Optional[Sequence[Mapping[str, str]]] = None,
    include: Optional[Sequence[Mapping[str, str]]] = None,
) -> List[Environment]:
    """Expand an axis set into its environments.

    Order is the lexicographic product in axis declaration order (the first
    axis varies slowest). `exclude` drops every combination matching all keys
    of an entry; `include` appends full combinations not already present.
    """

    normalized = validate_axes(axes)
    names = list(normalized)

    excludes = [_check_partial(entry, normalized, "exclude") for entry in exclude or []]
    includes = [_check_full(entry, names) for entry in include or []]

    combos: List[Tuple[Tuple[str, str], ...]] = []
    for values in itertools.product(*(normalized[n] for n in names)):
        pairs = tuple(zip(names, values))
        candidate = Environment(axes=pairs)
        if any(candidate.matches(ex) for ex in excludes):
            continue
        combos.append(pairs)

    seen = set(combos)
    for pairs in includes:
        if pairs not in seen:
            combos.append(pairs)
            seen.add(pairs)

    if not combos:
        raise ConfigError("matrix expands to no environments")

    return [Environment(axes=pairs, index=i) for i, pairs in enumerate(combos)]


def _check_partial(
    entry: Mapping[str, str], axes: Mapping[str, Tuple[str, ...]], kind: str
) -> Dict[str, str]:
    if not entry:
        raise ConfigError(f"empty {kind} entry")
    out: Dict[str, str] = {}
    for k, v in entry.items():
        if k not in axes:
            raise ConfigError(f"{kind} entry references unknown axis '{k}'")
        value = str(v)
        if value not in axes[k]:
            raise ConfigError(f"{kind} entry value '{value}' is not declared for axis '{k}'")
        out[k] = value
    return out


def _check_full(entry: Mapping[str, str], names: Sequence[str]) -> Tuple[Tuple[str, str], ...]:
    if set(entry) != set(names):
        raise ConfigError(
            f"include entry must set exactly the axes {list(names)}, got {sorted(entry)}"
        )
    return tuple((n, str(entry[n])) for n in names)


def parse_selector(text: str) -> Dict[str, str]:
    """Parse `AXIS=VALUE[,AXIS=VALUE...]` into a partial environment."""

    out: Dict[str, str] = {}
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, value = part.partition("=")
        name, value = name.strip(), value.strip()
        if not sep or not name or not value:
            raise ConfigError(f"invalid environment selector '{text}' (expected AXIS=VALUE)")
        if name in out and out[name] != value:
            raise ConfigError(f"selector '{text}' sets axis '{name}' twice")
        out[name] = value
    if not out:
        raise ConfigError("empty environment selector")
    return out


def select(environments: Sequence[Environment], selectors: Iterable[str]) -> List[Environment]:
    """Keep environments matching any selector (each selector is an AND of axis values)."""

    parsed = [parse_selector(s) for s in selectors]
    if not parsed:
        return list(environments)

    known: Dict[str, set] = {}
    for env in environments:
        for name, value in env.axes:
            known.setdefault(name, set()).add(value)

    for sel in parsed:
        for name, value in sel.items():
            if name not in known:
                raise ConfigError(f"unknown axis in selector: '{name}'")
            if value not in known[name]:
                raise ConfigError(f"axis '{name}' has no value '{value}'")

    chosen = [env for env in environments if any(env.matches(sel) for sel in parsed)]
    if not chosen:
        raise ConfigError("environment selectors match no environment")
    return chosen


def select_keys(environments: Sequence[Environment], keys: Collection[str]) -> List[Environment]:
    return [env for env in environments if env.key in keys]
