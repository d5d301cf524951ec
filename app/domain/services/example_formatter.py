"""
Few-shot example formatting for the system prompt
"""
from typing import Any, Sequence

CUSTOMER_PREFIX = "[CLIENTE]"
AGENT_PREFIX = "[AGENTE]"

EXAMPLES_HEADER = (
    "## Ejemplos de Referencia\n"
    "\n"
    "Los siguientes ejemplos muestran cómo agentes expertos manejan situaciones similares.\n"
    "Usa estos como guía para tu estilo y enfoque, pero adapta tu respuesta al contexto actual.\n"
    "\n"
)


def _field(example: Any, name: str) -> Any:
    if isinstance(example, dict):
        return example.get(name)
    return getattr(example, name, None)


def format_example(
    example: Any,
    *,
    max_messages: int = 20,
    include_scenario: bool = True,
    include_states: bool = False,
) -> str:
    """One example transcript; works on ConversationExample rows or plain dicts"""
    lines = []
    if include_scenario:
        lines.append(f"### {_field(example, 'scenario')}")
        lines.append(
            f"*Estado principal: {_field(example, 'primary_state') or 'N/A'} "
            f"| Resultado: {_field(example, 'outcome')}*"
        )
        lines.append("")

    messages = _field(example, "messages") or []
    for message in messages[:max_messages]:
        prefix = CUSTOMER_PREFIX if message.get("role") == "customer" else AGENT_PREFIX
        state_tag = f" ({message['state']})" if include_states and message.get("state") else ""
        lines.append(f"{prefix}{state_tag}: {message.get('content', '')}")

    if len(messages) > max_messages:
        lines.append(f"... ({len(messages) - max_messages} mensajes más)")

    return "\n".join(lines)


def format_examples(examples: Sequence[Any], **options) -> str:
    if not examples:
        return ""
    formatted = "\n\n---\n\n".join(
        f"**Ejemplo {i}**\n{format_example(example, **options)}"
        for i, example in enumerate(examples, start=1)
    )
    return EXAMPLES_HEADER + formatted


def summarize_example(example: Any) -> str:
    """Compact one-liner for logs"""
    flow = " → ".join(_field(example, "state_flow") or [])
    category = _field(example, "category")
    category = getattr(category, "value", category)
    return (
        f"[{_field(example, 'example_id')}] {category}/{_field(example, 'outcome')}: "
        f"{flow} ({len(_field(example, 'messages') or [])} msgs)"
    )
