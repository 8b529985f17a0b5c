"""
Prompt template rendering with {{token}} placeholders.
"""

import re
from typing import Any

from .threads import stringify

DEFAULT_TEMPLATE = "{{input}}"

_TOKEN = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")


def render_template(template: str, **values: Any) -> str:
    """
    Replace `{{name}}` and dotted `{{a.b}}` tokens with values.

    Dotted tokens walk mappings and attributes (`{{globals.topic}}`,
    `{{participant.name}}`). Unknown tokens render as empty strings.
    """
    template = template or DEFAULT_TEMPLATE

    def lookup(match: re.Match) -> str:
        head, *rest = match.group(1).split(".")
        value = values.get(head)
        for part in rest:
            if value is None:
                break
            if isinstance(value, dict):
                value = value.get(part)
            else:
                value = getattr(value, part, None)
        return "" if value is None else stringify(value)

    return _TOKEN.sub(lookup, template)


def format_context(bundle: dict[str, Any] | None) -> str:
    """Flatten a context bundle into prompt text, one section per layer."""
    if not bundle:
        return ""
    sections = []
    for layer, entries in bundle.items():
        if isinstance(entries, dict):
            body = "\n".join(f"{k}: {stringify(v)}" for k, v in entries.items())
        else:
            body = stringify(entries)
        sections.append(f"## {layer}\n{body}")
    return "\n\n".join(sections)
