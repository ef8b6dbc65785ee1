"""
Incremental merge of credential documents.

Automation workflows send partial credential updates as platforms are
re-synced (a new page, a refreshed token). Merging key by key keeps the
previously discovered state:

- list + list: existing items followed by incoming items, no de-duplication
- dict + dict: merged recursively with the same rules
- anything else: the incoming value replaces the existing one

Both walks use explicit stacks, so document depth is bounded only by the
payload size ceiling and never by the interpreter recursion limit.
"""

from typing import Any

_MISSING = object()

_SEQUENCES = (list, tuple)


def clone_document(value: Any) -> Any:
    """Deep-copy a JSON-like value. Tuples come back as lists."""
    if not isinstance(value, (dict, *_SEQUENCES)):
        return value

    root: Any = {} if isinstance(value, dict) else []
    stack = [(value, root)]

    while stack:
        source, target = stack.pop()
        items = source.items() if isinstance(source, dict) else enumerate(source)
        for key, item in items:
            if isinstance(item, dict):
                child: Any = {}
                stack.append((item, child))
            elif isinstance(item, _SEQUENCES):
                child = []
                stack.append((item, child))
            else:
                child = item

            if isinstance(target, dict):
                target[key] = child
            else:
                target.append(child)

    return root


def merge_credentials(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """
    Merge ``incoming`` into ``existing`` and return a new document.

    Neither argument is modified.

    Example:
        >>> merge_credentials({"pages": [1, 2], "info": {"x": 1}}, {"pages": [3], "info": {"y": 2}})
        {'pages': [1, 2, 3], 'info': {'x': 1, 'y': 2}}
    """
    result = clone_document(existing or {})
    stack = [(result, incoming or {})]

    while stack:
        target, source = stack.pop()
        for key, value in source.items():
            current = target.get(key, _MISSING)

            if isinstance(current, list) and isinstance(value, _SEQUENCES):
                # current is already our own copy
                current.extend(clone_document(list(value)))
            elif isinstance(current, dict) and isinstance(value, dict):
                stack.append((current, value))
            else:
                target[key] = clone_document(value)

    return result
