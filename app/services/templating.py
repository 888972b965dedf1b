import re
from typing import Any, Mapping

_IF_BLOCK = re.compile(r"\{\{#if (\w+)\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_LEFTOVER = re.compile(r"\{\{[^}]*\}\}")
_SPACES = re.compile(r"[ \t]{2,}")


def _present(value: Any) -> bool:
    return value is not None and value != "" and value is not False


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Render ``{{var}}`` and ``{{#if var}}...{{/if}}``; unresolved placeholders are dropped."""
    if not template:
        return ""

    rendered = _IF_BLOCK.sub(lambda match: match.group(2) if _present(values.get(match.group(1))) else "", template)

    def _substitute(match: re.Match) -> str:
        value = values.get(match.group(1))
        return str(value) if _present(value) else match.group(0)

    rendered = _VARIABLE.sub(_substitute, rendered)
    rendered = _LEFTOVER.sub("", rendered)
    rendered = _SPACES.sub(" ", rendered)
    rendered = re.sub(r"\s+([,.!?])", r"\1", rendered)
    return rendered.strip()


def format_price(amount: int, currency: str = "AED") -> str:
    return f"{currency} {amount:,}"
