from typing import Any

Scalar = str | int | float | bool | None


def flatten_json(data: Any, prefix: str = "") -> list[tuple[str, Scalar]]:
    """Flatten nested JSON into ``(path, scalar)`` pairs.

    Object members are joined with ``.`` and array items are addressed as
    ``[i]``, e.g. ``{"d": ["p", {"e": "q"}]}`` yields ``d[0]=p`` and ``d[1].e=q``.
    A bare scalar at the top level has no path and produces nothing.
    """
    pairs: list[tuple[str, Scalar]] = []
    _walk(data, prefix, pairs)
    return pairs


def _walk(node: Any, path: str, out: list[tuple[str, Scalar]]) -> None:
    if isinstance(node, dict):
        for key, child in node.items():
            _walk(child, f"{path}.{key}" if path else str(key), out)
    elif isinstance(node, list):
        for index, child in enumerate(node):
            _walk(child, f"{path}[{index}]", out)
    elif path:
        out.append((path, node))


def format_scalar(value: Scalar) -> str:
    """Render a flattened value as display text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)
