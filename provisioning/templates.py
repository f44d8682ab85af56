from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from core.errors import InvalidInput

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Z0-9_]+)\}")


def render_template(text: str, variables: Mapping[str, Any]) -> str:
    """Replace ${NAME} placeholders; every placeholder must have a value."""

    def _sub(m: "re.Match[str]") -> str:
        name = m.group(1)
        if name not in variables:
            raise InvalidInput(f"Missing template variable {name}")
        return str(variables[name])

    return _PLACEHOLDER_RE.sub(_sub, text)


def render_manifest(path: Union[str, Path], variables: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Render a JSON manifest template. Values are JSON-escaped before
    substitution so names/URLs can't break the document.
    """
    raw = Path(path).read_text(encoding="utf-8")
    escaped = {k: json.dumps(str(v))[1:-1] for k, v in variables.items()}
    rendered = render_template(raw, escaped)
    try:
        data = json.loads(rendered)
    except ValueError as e:
        raise InvalidInput(f"Manifest {path} is not valid JSON after rendering: {e}") from e
    if not isinstance(data, dict):
        raise InvalidInput(f"Manifest {path} must be a JSON object")
    return data
