from __future__ import annotations

import re
from typing import Collection, Dict, Iterable, List, Mapping, Tuple

from matrixci.errors import ConfigError

# ${{ matrix.os }} / ${{ env.RUST_BACKTRACE }}
EXPRESSION_RE = re.compile(r"\$\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\.([A-Za-z0-9_.-]+)\s*\}\}")

NAMESPACES = ("matrix", "env")


def references(text: str) -> List[Tuple[str, str]]:
    return [(m.group(1), m.group(2)) for m in EXPRESSION_RE.finditer(text)]


def render(text: str, context: Mapping[str, Mapping[str, str]]) -> str:
    """Substitute `${{ namespace.name }}` expressions from `context`."""

    def _sub(match: re.Match) -> str:
        namespace, name = match.group(1), match.group(2)
        try:
            return context[namespace][name]
        except KeyError:
            raise ConfigError(f"unresolved expression '{match.group(0)}'") from None

    return EXPRESSION_RE.sub(_sub, text)


def build_context(matrix: Mapping[str, str], env: Mapping[str, str]) -> Dict[str, Dict[str, str]]:
    return {"matrix": dict(matrix), "env": dict(env)}


def check_references(
    texts: Iterable[str], *, axes: Collection[str], env_names: Collection[str], where: str
) -> None:
    """Raise ConfigError for expressions that could never be resolved."""

    for text in texts:
        for namespace, name in references(text):
            if namespace not in NAMESPACES:
                raise ConfigError(f"{where}: unsupported expression namespace '{namespace}'")
            if namespace == "matrix" and name not in axes:
                raise ConfigError(f"{where}: unknown matrix axis '{name}'")
            if namespace == "env" and name not in env_names:
                raise ConfigError(f"{where}: unknown env variable '{name}'")
