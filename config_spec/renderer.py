"""
Template rendering for per-environment configuration.

Templates use ``${VAR}`` for required variables and ``${VAR:-default}`` for
optional ones. Substitution is a single pass and every missing required
variable is reported at once. A value that would leave a placeholder in the
output is rejected, so rendering the output again changes nothing.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from controller.errors import ConfigurationError

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
NUMBER = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
INTEGER = re.compile(r"^[+-]?\d+$")


def coerce(value: str) -> Any:
    """Exact ``true``/``false`` become booleans, numeric literals numbers, the rest stays text."""
    if value == "true":
        return True
    if value == "false":
        return False
    if NUMBER.match(value):
        return int(value) if INTEGER.match(value) else float(value)
    return value


@dataclass(frozen=True)
class RenderedConfig:
    """Rendered text plus the resolved, type-coerced value of every placeholder."""
    text: str
    values: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.text


def render(template: str, env: Mapping[str, str]) -> Tuple[Optional[RenderedConfig], List[str]]:
    """Resolve placeholders against ``env``.

    Returns ``(RenderedConfig, [])`` on success or ``(None, missing)`` where
    ``missing`` lists every unresolved required variable once, in order of
    first appearance. Raises ConfigurationError when a substituted value
    introduces a placeholder into the output.
    """
    missing: List[str] = []
    values: Dict[str, Any] = {}
    raw_values: Dict[str, str] = {}

    def substitute(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        raw = env.get(name)
        if default is not None and not raw:
            # shell semantics: ':-' also replaces an empty value
            raw = default
        if raw is None:
            if name not in missing:
                missing.append(name)
            return match.group(0)
        values[name] = coerce(raw)
        raw_values[name] = raw
        return raw

    text = PLACEHOLDER.sub(substitute, template)
    if missing:
        logger.debug(f"Template has unresolved variables: {missing}")
        return None, missing

    leftover = [m.group(0) for m in PLACEHOLDER.finditer(text)]
    if leftover:
        culprits = [name for name, raw in raw_values.items() if "${" in raw]
        errors = [f"value of {name} would be expanded on the next render: {raw_values[name]!r}" for name in culprits]
        raise ConfigurationError(
            "Rendered output still contains placeholders",
            errors=errors or [f"placeholders left in output: {', '.join(leftover)}"],
        )
    return RenderedConfig(text=text, values=values), []
