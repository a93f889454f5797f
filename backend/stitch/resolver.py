"""Variable resolver for node input templates.

Templates are plain JSON values whose strings may contain ``{{ ... }}``
placeholders::

    {"prompt": "Write about {{ research.topic }}", "ref": "{{ item }}"}

A string made of a single placeholder resolves to the raw referenced value
(a dict stays a dict); embedded placeholders are interpolated as text.

Known behavior ("silent null"): an unresolvable path resolves to None and
is only logged at debug level, so a fan-out branch can proceed on partial
upstream data. Testers should expect None rather than an error.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .paths import get_path, parse_path
from .run_state import NodeStatus, RunSnapshot

logger = logging.getLogger("stitch.resolver")

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def build_context(
    run: RunSnapshot,
    fan_index: Optional[int] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Mapping[str, Any]:
    """Read-only snapshot of prior outputs for template resolution.

    Keys are instance ids of completed nodes. Inside a fan-out branch
    (``fan_index`` set) each same-index instance is also reachable by its
    static node id, so ``{{ render.url }}`` means "this branch's render".
    ``extra`` (input, item, index, total) is layered on top.
    """
    outputs = run.outputs_snapshot()
    context: Dict[str, Any] = dict(outputs)
    if fan_index is not None:
        for iid, state in run.node_states.items():
            if state.index == fan_index and state.status == NodeStatus.COMPLETED:
                context[state.node_id] = outputs[iid]
    if extra:
        context.update(copy.deepcopy(extra))
    return MappingProxyType(context)


def lookup(expression: str, context: Mapping[str, Any]) -> Any:
    """Resolve ``node.path[0]`` against context. Missing → None."""
    segments = parse_path(expression)
    if not segments:
        return None
    head, rest = segments[0], segments[1:]
    if head not in context:
        logger.debug(f"Unresolved reference '{expression}': no output for '{head}'")
        return None
    value = get_path(context[head], rest) if rest else context[head]
    if value is None and rest:
        logger.debug(f"Unresolved reference '{expression}': path missing")
    return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve(template: Any, context: Mapping[str, Any]) -> Any:
    """Recursively resolve placeholders in template against context."""
    if isinstance(template, str):
        whole = _PLACEHOLDER.fullmatch(template.strip())
        if whole:
            return copy.deepcopy(lookup(whole.group(1), context))
        if "{{" not in template:
            return template
        return _PLACEHOLDER.sub(lambda m: _stringify(lookup(m.group(1), context)), template)
    if isinstance(template, dict):
        return {k: resolve(v, context) for k, v in template.items()}
    if isinstance(template, list):
        return [resolve(v, context) for v in template]
    return template
