"""
Snapshot Diff Engine
Pure, deterministic comparison of two workflow snapshots.

Connections are compared as one opaque value. n8n connections carry no stable
per-edge identity, so an edge-level breakdown would have to invent one; the
diff only reports whether the connection map changed.
"""
from typing import Any, Dict, List, Optional

from workflow_vcs.models.opaque import deep_equal
from workflow_vcs.models.schemas import (
    ChangeType,
    DiffMetadata,
    DiffSummary,
    FieldChange,
    METADATA_FIELDS,
    NODE_FIELDS,
    NodeChanges,
    NodeModification,
    WorkflowDiff,
    WorkflowDocument,
    WorkflowNode,
)


def compare_values(old_value: Any, new_value: Any) -> FieldChange:
    return FieldChange(
        changed=not deep_equal(old_value, new_value),
        old_value=old_value,
        new_value=new_value
    )


def compare_tags(old_tags: List[str], new_tags: List[str]) -> FieldChange:
    added = sorted(set(new_tags) - set(old_tags))
    removed = sorted(set(old_tags) - set(new_tags))
    return FieldChange(
        changed=bool(added or removed),
        old_value=list(old_tags),
        new_value=list(new_tags),
        added=added,
        removed=removed
    )


def compare_nodes(old_node: WorkflowNode, new_node: WorkflowNode) -> Dict[str, FieldChange]:
    """Per-field sub-diff; only changed fields are returned."""
    old_fields = old_node.tracked_fields()
    new_fields = new_node.tracked_fields()
    changes = {}
    for field in NODE_FIELDS:
        comparison = compare_values(old_fields[field], new_fields[field])
        if comparison.changed:
            changes[field] = comparison
    return changes


def nodes_equal(left: Optional[WorkflowNode], right: Optional[WorkflowNode]) -> bool:
    """Equality over tracked fields. None stands for an absent node."""
    if left is None or right is None:
        return left is None and right is None
    return deep_equal(left.tracked_fields(), right.tracked_fields())


def diff_documents(
    old: WorkflowDocument,
    new: WorkflowDocument,
    from_version_id: Optional[str] = None,
    to_version_id: Optional[str] = None
) -> WorkflowDiff:
    """
    Compute the structured difference between two snapshots.

    Args:
        old: Snapshot the changes are measured from.
        new: Snapshot the changes lead to.
        from_version_id: Optional version id recorded in the diff metadata.
        to_version_id: Optional version id recorded in the diff metadata.

    Returns:
        WorkflowDiff with metadata field changes, node changes sorted by id,
        the connections flag and a summary.
    """
    old_data = old.model_dump(mode="json")
    new_data = new.model_dump(mode="json")

    field_changes: Dict[str, FieldChange] = {}
    for field in METADATA_FIELDS:
        if field == "tags":
            field_changes[field] = compare_tags(old.tags, new.tags)
        else:
            field_changes[field] = compare_values(old_data[field], new_data[field])

    old_nodes = old.node_map()
    new_nodes = new.node_map()

    added = [new_nodes[node_id] for node_id in sorted(new_nodes.keys() - old_nodes.keys())]
    removed = [old_nodes[node_id] for node_id in sorted(old_nodes.keys() - new_nodes.keys())]
    modified = []
    for node_id in sorted(old_nodes.keys() & new_nodes.keys()):
        changes = compare_nodes(old_nodes[node_id], new_nodes[node_id])
        if changes:
            modified.append(NodeModification(
                id=node_id,
                name=new_nodes[node_id].name,
                field_changes=changes
            ))

    connections_changed = not deep_equal(old_data["connections"], new_data["connections"])
    nodes_changed = bool(added or removed or modified)

    # one count per changed category: name, active, tags, settings, nodes, connections
    change_count = sum(1 for change in field_changes.values() if change.changed)
    change_count += int(nodes_changed) + int(connections_changed)

    summary = DiffSummary(
        has_changes=change_count > 0,
        added_count=len(added),
        removed_count=len(removed),
        modified_count=len(modified),
        changed_connections=1 if connections_changed else 0,
        change_count=change_count
    )

    return WorkflowDiff(
        metadata=DiffMetadata(from_version_id=from_version_id, to_version_id=to_version_id),
        field_changes=field_changes,
        node_changes=NodeChanges(added=added, removed=removed, modified=modified),
        connections_changed=connections_changed,
        summary=summary
    )


# =============================================================================
# CHANGE CLASSIFICATION
# =============================================================================
def classify_change(diff: WorkflowDiff) -> ChangeType:
    """Removals or heavy rewiring are major; additions or broad edits minor; else patch."""
    summary = diff.summary
    if summary.removed_count > 0 or summary.changed_connections > 3:
        return ChangeType.MAJOR
    if summary.added_count > 0 or summary.change_count > 2:
        return ChangeType.MINOR
    return ChangeType.PATCH


def describe_change(diff: WorkflowDiff) -> str:
    summary = diff.summary
    parts = []
    if summary.added_count:
        parts.append(f"{summary.added_count} node(s) added")
    if summary.removed_count:
        parts.append(f"{summary.removed_count} node(s) removed")
    if summary.modified_count:
        parts.append(f"{summary.modified_count} node(s) modified")
    if summary.changed_connections:
        parts.append(f"{summary.changed_connections} connection(s) changed")
    for field in diff.changed_fields():
        parts.append(f"{field} changed")
    return ", ".join(parts) if parts else "No changes"


def change_tags(diff: WorkflowDiff) -> List[str]:
    summary = diff.summary
    tags = []
    if summary.added_count:
        tags.append("nodes-added")
    if summary.removed_count:
        tags.append("nodes-removed")
    if summary.modified_count:
        tags.append("nodes-modified")
    if summary.changed_connections:
        tags.append("connections-changed")
    if diff.field_changes["active"].changed:
        tags.append("activation-changed")
    if diff.field_changes["name"].changed:
        tags.append("renamed")
    return tags


def assess_diff(diff: WorkflowDiff) -> Dict[str, Any]:
    """Risk insight for a version comparison, scaled by the number of changed categories."""
    summary = diff.summary
    total = summary.change_count
    if total > 10:
        risk_level = "critical"
    elif total > 5:
        risk_level = "high"
    elif total > 2:
        risk_level = "medium"
    else:
        risk_level = "low"

    recommendations = []
    breaking_changes = []
    if summary.removed_count:
        recommendations.append("Test thoroughly as nodes were removed")
        breaking_changes.append("Node removal may break dependent workflows")
    if summary.changed_connections:
        recommendations.append("Verify all connections are working correctly")
        breaking_changes.append("Connection changes may affect data flow")
    if diff.field_changes["active"].changed:
        recommendations.append("Workflow activation state changed - review impact")

    return {
        "risk_level": risk_level,
        "impact_assessment": (
            f"{total} changes detected. Risk level: {risk_level}. "
            f"{len(breaking_changes)} potential breaking changes identified."
        ),
        "recommendations": recommendations,
        "breaking_changes": breaking_changes
    }
