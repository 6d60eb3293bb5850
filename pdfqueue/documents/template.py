"""
HTML template variable handling.

Templates reference object data with `{{object.property}}` tokens, e.g.
`{{contact.firstname}}` or `{{deal.amount}}`. Tokens without a dot are
looked up at the top level of the render data.
"""

import json
import re
from datetime import date, datetime
from typing import Any

VARIABLE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def extract_variables(html: str) -> list[str]:
    """
    List the distinct variable names used in a template, in order of appearance.

    Args:
        html: Template content.

    Returns:
        Variable names without braces or surrounding whitespace.
    """
    seen: list[str] = []
    for match in VARIABLE_PATTERN.finditer(html):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def resolve_variable(name: str, data: dict[str, Any]) -> Any:
    """Walk a dotted variable name through nested dicts. Returns None when absent."""
    value: Any = data
    for part in name.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, default=str)


def render_template(html: str, data: dict[str, Any]) -> str:
    """
    Replace every variable token with its value from `data`.

    Unresolved tokens render as an empty string.

    Args:
        html: Template content.
        data: Nested render data, e.g. {"contact": {"firstname": "Ada"}}.

    Returns:
        The rendered HTML.
    """
    return VARIABLE_PATTERN.sub(
        lambda match: format_value(resolve_variable(match.group(1), data)),
        html,
    )


def missing_variables(html: str, data: dict[str, Any]) -> list[str]:
    """Variables used by the template that `data` does not provide."""
    return [name for name in extract_variables(html) if resolve_variable(name, data) is None]


def builtin_variables(now: datetime | None = None) -> dict[str, str]:
    """Date variables available to every template."""
    now = now or datetime.now()
    return {
        "current_date": now.date().isoformat(),
        "current_datetime": now.isoformat(timespec="seconds"),
        "current_year": str(now.year),
        "current_month": now.strftime("%B"),
    }
