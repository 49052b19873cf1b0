"""
Field-path helpers shared by condition evaluation and actions.

A path is a dotted list of identifiers, each optionally followed by list
indexes: ``order.lines[0].sku``.
"""

import re
from typing import Any, Callable, List, Mapping, MutableMapping, Optional, Union

SEGMENT_PATTERN = r"[A-Za-z_][A-Za-z0-9_]*(?:\[\d+\])*"
FIELD_PATH_RE = re.compile(rf"{SEGMENT_PATTERN}(?:\.{SEGMENT_PATTERN})*")
TEMPLATE_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_SEGMENT_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)|\[(\d+)\]")

Step = Union[str, int]


class FieldPathError(ValueError):
    """A path is malformed or cannot be written."""


def is_valid_field_path(path: Any, max_length: int = 200) -> bool:
    if not isinstance(path, str) or not path or len(path) > max_length:
        return False
    return FIELD_PATH_RE.fullmatch(path) is not None


def parse_path(path: str) -> List[Step]:
    """Split a path into key (str) and index (int) steps."""
    if not FIELD_PATH_RE.fullmatch(path or ""):
        raise FieldPathError(f"Invalid field path: {path}")

    steps: List[Step] = []
    for segment in path.split("."):
        for name, index in _SEGMENT_RE.findall(segment):
            steps.append(name if name else int(index))
    return steps


def get_value(source: Any, path: str) -> Any:
    """Resolve ``path`` inside nested mappings/sequences; ``None`` when absent."""
    current = source
    for step in parse_path(path):
        if isinstance(step, int):
            if isinstance(current, (list, tuple)) and -1 < step < len(current):
                current = current[step]
            else:
                return None
        elif isinstance(current, Mapping) and step in current:
            current = current[step]
        else:
            return None
    return current


def set_value(target: MutableMapping[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate mappings."""
    steps = parse_path(path)
    current: Any = target

    for step, next_step in zip(steps, steps[1:]):
        current = _descend(current, step, next_step, path)

    last = steps[-1]
    if isinstance(last, int):
        if not isinstance(current, list) or last >= len(current):
            raise FieldPathError(f"Index {last} out of range in {path}")
        current[last] = value
    elif isinstance(current, MutableMapping):
        current[last] = value
    else:
        raise FieldPathError(f"Cannot set {path}: parent is not an object")


def _descend(current: Any, step: Step, next_step: Step, path: str) -> Any:
    if isinstance(step, int):
        if not isinstance(current, list) or step >= len(current):
            raise FieldPathError(f"Index {step} out of range in {path}")
        return current[step]

    if not isinstance(current, MutableMapping):
        raise FieldPathError(f"Cannot set {path}: parent is not an object")
    child = current.get(step)
    if child is None:
        if isinstance(next_step, int):
            raise FieldPathError(f"Cannot index missing list {step} in {path}")
        child = current[step] = {}
    return child


def template_reference(value: Any) -> Optional[str]:
    """Return the path when ``value`` is exactly one ``{{ path }}`` placeholder."""
    if not isinstance(value, str):
        return None
    match = TEMPLATE_RE.fullmatch(value.strip())
    return match.group(1) if match else None


def find_template_paths(text: str) -> List[str]:
    return [m.group(1) for m in TEMPLATE_RE.finditer(text)]


def render_template(text: str, resolver: Callable[[str], Any]) -> str:
    """Replace every ``{{ path }}`` with the resolved value's string form."""

    def _substitute(match: "re.Match[str]") -> str:
        path = match.group(1)
        if not is_valid_field_path(path):
            return match.group(0)
        resolved = resolver(path)
        return "" if resolved is None else str(resolved)

    return TEMPLATE_RE.sub(_substitute, text)


def render_value(value: Any, resolver: Callable[[str], Any]) -> Any:
    """Render templates in strings nested anywhere inside ``value``.

    A string that is a single placeholder resolves to the raw (typed) value.
    """
    if isinstance(value, str):
        reference = template_reference(value)
        if reference is not None and is_valid_field_path(reference):
            return resolver(reference)
        return render_template(value, resolver)
    if isinstance(value, Mapping):
        return {k: render_value(v, resolver) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, resolver) for v in value]
    return value


def root_segment(path: str) -> str:
    """First key of a path, without any index suffix: ``user`` for ``user.roles[0]``."""
    return path.split(".", 1)[0].split("[", 1)[0]
