"""
Boundary Validation
Checks applied when documents cross the engine boundary (pull and push)
and to every merged document before it is recorded. Diffs accept any document.
"""
from typing import Any, Dict, Iterator, List, Tuple

from workflow_vcs.core.errors import ValidationError
from workflow_vcs.models.schemas import WorkflowDocument


def _iter_targets(outputs: Any) -> Iterator[Dict[str, Any]]:
    # n8n nests targets as [[{...}, ...], ...] per output index; tolerate a flat list too
    if not isinstance(outputs, list):
        return
    for group in outputs:
        items = group if isinstance(group, list) else [group]
        for item in items:
            if isinstance(item, dict):
                yield item


def iter_connection_endpoints(document: WorkflowDocument) -> Iterator[Tuple[str, str]]:
    """Yield (source, target) references as they appear in the connection map."""
    for source, ports in document.connections.items():
        if not isinstance(ports, dict):
            continue
        for outputs in ports.values():
            for target in _iter_targets(outputs):
                yield source, str(target.get("node", ""))


def find_dangling_connections(document: WorkflowDocument) -> List[str]:
    """
    List connection endpoints that do not reference a node of the document.
    n8n keys connections by node name; ids are accepted as well.
    """
    known = {node.name for node in document.nodes} | {node.id for node in document.nodes}
    problems = []
    for source, target in iter_connection_endpoints(document):
        if source not in known:
            problems.append(f"connection source '{source}' is not a node of the workflow")
        if target not in known:
            problems.append(f"connection from '{source}' targets unknown node '{target}'")
    # keep first occurrence order, drop repeats
    return list(dict.fromkeys(problems))


def validate_document(document: WorkflowDocument) -> WorkflowDocument:
    """Raise ValidationError when any connection endpoint is dangling."""
    problems = find_dangling_connections(document)
    if problems:
        raise ValidationError(
            f"Workflow '{document.id}' has invalid connections",
            context="; ".join(problems)
        )
    return document
