"""
Placeholder substitution for follow-up bodies

``{{contact.full_name}}``, ``{{session.context.account_type}}`` and plain
``{{key}}`` variables resolved from a follow-up config.
"""
import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


def get_nested_property(obj: Any, path: str) -> Any:
    """Walk a dot path over dicts and attributes; None once anything is missing"""
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def substitute_template_variables(
    template: str,
    session: Any,
    contact: Any = None,
    variables: Mapping[str, Any] | None = None,
) -> str:
    """
    Replace every ``{{...}}`` in ``template``.

    ``contact.*`` and ``session.*`` paths read the given objects (missing
    values become ""), other names are looked up in ``variables``.
    Unknown placeholders are left untouched.
    """
    variables = variables or {}

    def _replace(match: re.Match) -> str:
        path = match.group(1).strip()

        if path.startswith("contact."):
            if contact is None:
                return ""
            value = get_nested_property(contact, path[len("contact."):])
        elif path.startswith("session."):
            value = get_nested_property(session, path[len("session."):])
        elif path in variables:
            value = variables[path]
        else:
            return match.group(0)

        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)
