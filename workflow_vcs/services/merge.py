"""
Three-Way Merge Engine
Reconciles two snapshots that diverged from a common base.

Everything here is pure and CPU-only: callers copy the three snapshots out of
the store and run the merge without holding any lock.
"""
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from workflow_vcs.core.errors import ValidationError
from workflow_vcs.core.logging import merge_logger as logger
from workflow_vcs.models.opaque import deep_copy, deep_equal
from workflow_vcs.models.schemas import (
    ConflictResolution,
    ConflictType,
    METADATA_FIELDS,
    MergeConflict,
    MergePreview,
    MergeResult,
    MergeSummary,
    NODE_FIELDS,
    ResolutionStrategy,
    RiskAssessment,
    Severity,
    WorkflowDiff,
    WorkflowDocument,
    WorkflowNode,
)
from workflow_vcs.models.validation import iter_connection_endpoints, validate_document
from workflow_vcs.services.diff import diff_documents, nodes_equal

CONNECTION_CONFLICT_ID = "connection_conflict_connections"
# Position is layout only; it never changes what the workflow does.
NON_SEMANTIC_NODE_FIELDS = {"position"}


def node_conflict_id(node_id: str) -> str:
    return f"node_conflict_{node_id}"


def metadata_conflict_id(field: str) -> str:
    return f"metadata_conflict_{field}"


def _dump_node(node: Optional[WorkflowNode]) -> Optional[Dict[str, Any]]:
    return node.model_dump(mode="json") if node is not None else None


def _touched_fields(diff: WorkflowDiff, node_id: str) -> set:
    modification = diff.node_changes.modification(node_id)
    if modification is not None:
        return set(modification.field_changes)
    # added or removed: the whole node is touched
    return set(NODE_FIELDS)


# =============================================================================
# CONFLICT DETECTION
# =============================================================================
def _node_conflicts(
    base: WorkflowDocument,
    source: WorkflowDocument,
    target: WorkflowDocument,
    source_diff: WorkflowDiff,
    target_diff: WorkflowDiff
) -> List[MergeConflict]:
    base_nodes = base.node_map()
    source_nodes = source.node_map()
    target_nodes = target.node_map()

    conflicts = []
    both = source_diff.node_changes.touched_ids() & target_diff.node_changes.touched_ids()
    for node_id in sorted(both):
        base_node = base_nodes.get(node_id)
        source_node = source_nodes.get(node_id)
        target_node = target_nodes.get(node_id)

        # both sides arrived at the same node (or both deleted it)
        if nodes_equal(source_node, target_node):
            continue

        label = (target_node or source_node or base_node).name
        auto_resolvable = False
        suggestion = ResolutionStrategy.MANUAL

        if source_node is None or target_node is None:
            severity = Severity.HIGH
            description = f"Node '{label}' was removed in one branch and modified in the other"
        else:
            if source_node.type != target_node.type:
                severity = Severity.CRITICAL
            elif source_node.name != target_node.name:
                severity = Severity.MEDIUM
            else:
                severity = Severity.LOW

            if base_node is None:
                description = f"Node '{label}' was added in both branches with different content"
            else:
                source_fields = _touched_fields(source_diff, node_id)
                target_fields = _touched_fields(target_diff, node_id)
                description = (
                    f"Node '{label}' was modified in both branches "
                    f"(source: {', '.join(sorted(source_fields))}; "
                    f"target: {', '.join(sorted(target_fields))})"
                )
                if source_fields <= NON_SEMANTIC_NODE_FIELDS and target_fields <= NON_SEMANTIC_NODE_FIELDS:
                    auto_resolvable = True
                    suggestion = ResolutionStrategy.KEEP_TARGET
                elif not source_fields & target_fields:
                    suggestion = ResolutionStrategy.MERGE

        conflicts.append(MergeConflict(
            id=node_conflict_id(node_id),
            type=ConflictType.NODE,
            field="nodes",
            entity_id=node_id,
            entity_name=label,
            source_value=_dump_node(source_node),
            target_value=_dump_node(target_node),
            base_value=_dump_node(base_node),
            severity=severity,
            auto_resolvable=auto_resolvable,
            suggested_resolution=suggestion,
            description=description
        ))
    return conflicts


def _metadata_conflicts(
    base: WorkflowDocument,
    source: WorkflowDocument,
    target: WorkflowDocument,
    source_diff: WorkflowDiff,
    target_diff: WorkflowDiff
) -> List[MergeConflict]:
    base_data = base.model_dump(mode="json")
    source_data = source.model_dump(mode="json")
    target_data = target.model_dump(mode="json")

    conflicts = []
    for field in METADATA_FIELDS:
        if not (source_diff.field_changes[field].changed and target_diff.field_changes[field].changed):
            continue
        if deep_equal(source_data[field], target_data[field]):
            continue

        if field == "tags":
            auto_resolvable, suggestion = True, ResolutionStrategy.MERGE
        elif field == "active":
            # the merge destination decides whether the workflow runs
            auto_resolvable, suggestion = True, ResolutionStrategy.KEEP_TARGET
        else:
            auto_resolvable, suggestion = False, ResolutionStrategy.MANUAL

        conflicts.append(MergeConflict(
            id=metadata_conflict_id(field),
            type=ConflictType.METADATA,
            field=field,
            entity_id=base.id,
            source_value=source_data[field],
            target_value=target_data[field],
            base_value=base_data[field],
            severity=Severity.HIGH if field == "active" else Severity.MEDIUM,
            auto_resolvable=auto_resolvable,
            suggested_resolution=suggestion,
            description=f"Workflow {field} was changed in both branches"
        ))
    return conflicts


def _connection_conflicts(
    base: WorkflowDocument,
    source: WorkflowDocument,
    target: WorkflowDocument,
    source_diff: WorkflowDiff,
    target_diff: WorkflowDiff
) -> List[MergeConflict]:
    both_changed = source_diff.connections_changed and target_diff.connections_changed
    if both_changed and not deep_equal(source.connections, target.connections):
        description = "Workflow connections were modified in both branches"
    else:
        # the connection map the merge would keep must not point at a node it drops
        kept = source if source_diff.connections_changed and not both_changed else target
        removed = _removed_by_merge(base, source, target)
        orphaned = sorted({name for edge in iter_connection_endpoints(kept) for name in edge if name in removed})
        if not orphaned:
            return []
        description = f"Connections reference node(s) removed in the other branch: {', '.join(orphaned)}"

    return [MergeConflict(
        id=CONNECTION_CONFLICT_ID,
        type=ConflictType.CONNECTION,
        field="connections",
        entity_id=base.id,
        source_value=deep_copy(source.connections),
        target_value=deep_copy(target.connections),
        base_value=deep_copy(base.connections),
        severity=Severity.HIGH,
        auto_resolvable=False,
        suggested_resolution=ResolutionStrategy.MANUAL,
        description=description
    )]


def _removed_by_merge(base: WorkflowDocument, source: WorkflowDocument, target: WorkflowDocument) -> set:
    """Names and ids of base nodes one side deleted while the other left them alone."""
    source_nodes = source.node_map()
    target_nodes = target.node_map()
    removed = set()
    for node_id, node in base.node_map().items():
        in_source = source_nodes.get(node_id)
        in_target = target_nodes.get(node_id)
        if in_source is None and (in_target is None or nodes_equal(node, in_target)):
            removed.update((node.name, node.id))
        elif in_target is None and nodes_equal(node, in_source):
            removed.update((node.name, node.id))
    # a surviving node may have taken over a removed node's name
    surviving = list(source_nodes.values()) + list(target_nodes.values())
    return removed - {n.name for n in surviving if n.id not in removed}


def detect_conflicts(
    base: WorkflowDocument,
    source: WorkflowDocument,
    target: WorkflowDocument,
    source_diff: Optional[WorkflowDiff] = None,
    target_diff: Optional[WorkflowDiff] = None
) -> List[MergeConflict]:
    """Conflicts in a stable order: nodes by id, then metadata fields, then connections."""
    source_diff = source_diff or diff_documents(base, source)
    target_diff = target_diff or diff_documents(base, target)
    args = (base, source, target, source_diff, target_diff)
    return _node_conflicts(*args) + _metadata_conflicts(*args) + _connection_conflicts(*args)


# =============================================================================
# PREVIEW
# =============================================================================
def _summarize(
    conflicts: List[MergeConflict],
    source_diff: WorkflowDiff,
    target_diff: WorkflowDiff
) -> MergeSummary:
    src, tgt = source_diff.node_changes, target_diff.node_changes
    added = {n.id for n in src.added} | {n.id for n in tgt.added}
    removed = {n.id for n in src.removed} | {n.id for n in tgt.removed}
    modified = {m.id for m in src.modified} | {m.id for m in tgt.modified}
    fields = set(source_diff.changed_fields()) | set(target_diff.changed_fields())
    connections = source_diff.connections_changed or target_diff.connections_changed

    auto = sum(1 for c in conflicts if c.auto_resolvable)
    return MergeSummary(
        total_conflicts=len(conflicts),
        auto_resolvable_conflicts=auto,
        manual_conflicts=len(conflicts) - auto,
        added_nodes=len(added),
        removed_nodes=len(removed),
        modified_nodes=len(modified),
        changed_connections=1 if connections else 0,
        changed_entities=len(added | removed | modified) + len(fields) + int(connections)
    )


def assess_risk(conflicts: List[MergeConflict], summary: MergeSummary) -> RiskAssessment:
    critical = sum(1 for c in conflicts if c.severity == Severity.CRITICAL)
    high = sum(1 for c in conflicts if c.severity == Severity.HIGH)

    risk_factors = []
    recommendations = []
    if critical:
        risk_level = Severity.CRITICAL
        risk_factors.append(f"{critical} critical conflicts detected")
        recommendations.append("Manual review required for all critical conflicts")
    elif high:
        risk_level = Severity.HIGH
        risk_factors.append(f"{high} high-severity conflicts detected")
    elif summary.changed_entities > 10:
        risk_level = Severity.MEDIUM
        risk_factors.append("Large number of changes detected")
    else:
        risk_level = Severity.LOW

    if any(c.type == ConflictType.CONNECTION for c in conflicts):
        risk_factors.append("Connection changes may affect workflow execution")
        recommendations.append("Test workflow execution after merge")

    if not recommendations:
        recommendations.append("Merge appears safe to proceed automatically")

    return RiskAssessment(
        risk_level=risk_level,
        risk_factors=risk_factors,
        recommendations=recommendations
    )


def estimate_merge_time(summary: MergeSummary) -> str:
    if summary.manual_conflicts > 5:
        return "30-60 minutes"
    if summary.manual_conflicts > 0:
        return "10-30 minutes"
    if summary.changed_entities > 10:
        return "5-10 minutes"
    return "1-5 minutes"


def preview_merge(
    base: WorkflowDocument,
    source: WorkflowDocument,
    target: WorkflowDocument
) -> MergePreview:
    """
    Predict the outcome of merging source into target.

    Args:
        base: Common ancestor snapshot.
        source: Snapshot being merged in.
        target: Snapshot receiving the merge.

    Returns:
        MergePreview with every conflict, change counts and a risk assessment.
    """
    source_diff = diff_documents(base, source)
    target_diff = diff_documents(base, target)
    conflicts = detect_conflicts(base, source, target, source_diff, target_diff)
    summary = _summarize(conflicts, source_diff, target_diff)

    return MergePreview(
        can_auto_merge=summary.manual_conflicts == 0,
        conflicts=conflicts,
        summary=summary,
        risk_assessment=assess_risk(conflicts, summary),
        estimated_merge_time=estimate_merge_time(summary)
    )


# =============================================================================
# RESOLUTION
# =============================================================================
def _merge_node_fields(conflict: MergeConflict) -> Dict[str, Any]:
    base, source, target = conflict.base_value, conflict.source_value, conflict.target_value
    if base is None or source is None or target is None:
        raise ValidationError(
            f"'merge' needs both branches to modify an existing node ({conflict.id})"
        )
    merged = deep_copy(target)
    for field in NODE_FIELDS:
        source_changed = not deep_equal(source.get(field), base.get(field))
        target_changed = not deep_equal(target.get(field), base.get(field))
        if source_changed and not target_changed:
            merged[field] = deep_copy(source[field])
    return merged


def _merge_settings(conflict: MergeConflict) -> Dict[str, Any]:
    base = conflict.base_value or {}
    source = conflict.source_value or {}
    merged = deep_copy(conflict.target_value or {})
    for key in set(base) | set(source):
        source_changed = (key in source) != (key in base) or not deep_equal(source.get(key), base.get(key))
        target_changed = (key in merged) != (key in base) or not deep_equal(merged.get(key), base.get(key))
        if source_changed and not target_changed:
            if key in source:
                merged[key] = deep_copy(source[key])
            else:
                merged.pop(key, None)
    return merged


def _manual_value(conflict: MergeConflict, value: Any) -> Any:
    try:
        if conflict.type == ConflictType.NODE:
            node = WorkflowNode.model_validate(value)
            if node.id != conflict.entity_id:
                raise ValidationError(
                    f"Manual value for {conflict.id} must keep node id '{conflict.entity_id}'"
                )
            return node.model_dump(mode="json")
        if conflict.type == ConflictType.CONNECTION:
            if not isinstance(value, dict):
                raise ValidationError(f"Manual value for {conflict.id} must be a connection map")
            return deep_copy(value)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid manual node for {conflict.id}", context=str(e))

    # metadata: reuse the document validators for the field
    candidate = {"id": conflict.entity_id or "merged", "name": "merged", conflict.field: value}
    try:
        return WorkflowDocument.model_validate(candidate).model_dump(mode="json")[conflict.field]
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid manual value for {conflict.id}", context=str(e))


def resolve_conflict_value(conflict: MergeConflict, resolution: ConflictResolution) -> Any:
    """
    Compute the JSON value a resolution produces for one conflict.
    A node conflict resolving to None removes the node.
    """
    strategy = resolution.strategy
    if strategy == ResolutionStrategy.KEEP_SOURCE:
        return deep_copy(conflict.source_value)
    if strategy == ResolutionStrategy.KEEP_TARGET:
        return deep_copy(conflict.target_value)
    if strategy == ResolutionStrategy.MANUAL:
        return _manual_value(conflict, resolution.value)

    if conflict.type == ConflictType.NODE:
        return _merge_node_fields(conflict)
    if conflict.type == ConflictType.METADATA and conflict.field == "tags":
        return sorted(set(conflict.source_value or []) | set(conflict.target_value or []))
    if conflict.type == ConflictType.METADATA and conflict.field == "settings":
        return _merge_settings(conflict)
    raise ValidationError(f"'merge' is not supported for {conflict.field} conflicts ({conflict.id})")


def parse_resolutions(raw: Optional[Dict[str, Any]]) -> Dict[str, ConflictResolution]:
    """Accept {conflict_id: "keep_source"} or {conflict_id: {"strategy": ..., "value": ...}}."""
    parsed = {}
    for conflict_id, value in (raw or {}).items():
        try:
            parsed[conflict_id] = ConflictResolution.model_validate(value)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid resolution for '{conflict_id}'", context=str(e))
    return parsed


# =============================================================================
# MERGE
# =============================================================================
def _assemble(
    base: WorkflowDocument,
    source: WorkflowDocument,
    target: WorkflowDocument,
    source_diff: WorkflowDiff,
    target_diff: WorkflowDiff,
    resolved: Dict[str, Any]
) -> WorkflowDocument:
    source_data = source.model_dump(mode="json")
    target_data = target.model_dump(mode="json")

    data: Dict[str, Any] = {"id": target.id}
    for field in METADATA_FIELDS:
        conflict_id = metadata_conflict_id(field)
        if conflict_id in resolved:
            data[field] = resolved[conflict_id]
        elif source_diff.field_changes[field].changed and not target_diff.field_changes[field].changed:
            data[field] = source_data[field]
        else:
            data[field] = target_data[field]

    base_nodes = base.node_map()
    source_nodes = source.node_map()
    target_nodes = target.node_map()
    # target order first, then nodes only the source knows about
    order = list(target_nodes) + [node_id for node_id in source_nodes if node_id not in target_nodes]

    nodes = []
    for node_id in order:
        conflict_id = node_conflict_id(node_id)
        if conflict_id in resolved:
            value = resolved[conflict_id]
        else:
            base_node = base_nodes.get(node_id)
            source_node = source_nodes.get(node_id)
            target_node = target_nodes.get(node_id)
            source_changed = not nodes_equal(base_node, source_node)
            target_changed = not nodes_equal(base_node, target_node)
            chosen = source_node if source_changed and not target_changed else target_node
            value = _dump_node(chosen)
        if value is not None:
            nodes.append(value)
    data["nodes"] = nodes

    if CONNECTION_CONFLICT_ID in resolved:
        data["connections"] = resolved[CONNECTION_CONFLICT_ID]
    elif source_diff.connections_changed and not target_diff.connections_changed:
        data["connections"] = source_data["connections"]
    else:
        data["connections"] = target_data["connections"]

    return WorkflowDocument.model_validate(deep_copy(data))


def merge_documents(
    base: WorkflowDocument,
    source: WorkflowDocument,
    target: WorkflowDocument,
    resolutions: Optional[Dict[str, ConflictResolution]] = None
) -> MergeResult:
    """
    Merge source into target relative to base.

    One-sided changes apply directly. Each conflict takes the caller's
    resolution when given, else its automatic resolution; anything left over
    blocks the merge and no merged document is produced.

    Raises:
        ValidationError: a supplied resolution cannot be applied to its conflict,
            or the resolved workflow has connections to missing nodes.
    """
    resolutions = resolutions or {}
    source_diff = diff_documents(base, source)
    target_diff = diff_documents(base, target)
    conflicts = detect_conflicts(base, source, target, source_diff, target_diff)

    known = {conflict.id for conflict in conflicts}
    ignored = sorted(set(resolutions) - known)
    if ignored:
        logger.warning(f"Ignoring resolutions for unknown conflicts: {ignored}")

    resolved: Dict[str, Any] = {}
    applied: Dict[str, ResolutionStrategy] = {}
    remaining: List[MergeConflict] = []
    auto_resolved = 0
    for conflict in conflicts:
        if conflict.id in resolutions:
            resolution = resolutions[conflict.id]
        elif conflict.auto_resolvable:
            resolution = ConflictResolution(strategy=conflict.suggested_resolution)
            auto_resolved += 1
        else:
            remaining.append(conflict)
            continue
        resolved[conflict.id] = resolve_conflict_value(conflict, resolution)
        applied[conflict.id] = resolution.strategy

    if remaining:
        logger.info(f"Merge blocked by {len(remaining)} unresolved conflict(s)")
        return MergeResult(
            success=False,
            conflicts=remaining,
            applied_resolutions=applied,
            auto_resolved=auto_resolved,
            ignored_resolutions=ignored,
            message=f"{len(remaining)} conflicts require manual resolution before merge can proceed"
        )

    merged = _assemble(base, source, target, source_diff, target_diff, resolved)
    try:
        validate_document(merged)
    except ValidationError as e:
        raise ValidationError("Resolutions leave the merged workflow with dangling connections", context=e.context)
    logger.info(
        f"Merged {len(conflicts)} conflict(s) ({auto_resolved} automatically), "
        f"{len(merged.nodes)} nodes in result"
    )
    return MergeResult(
        success=True,
        merged_document=merged,
        applied_resolutions=applied,
        auto_resolved=auto_resolved,
        ignored_resolutions=ignored,
        message="Merge completed"
    )


def split_resolutions(
    conflicts: List[MergeConflict],
    resolutions: Dict[str, ConflictResolution]
) -> Tuple[List[MergeConflict], List[str]]:
    """Validate resolutions against conflicts; return (still unresolved, unknown ids)."""
    by_id = {conflict.id: conflict for conflict in conflicts}
    unknown = sorted(set(resolutions) - set(by_id))
    for conflict_id, resolution in resolutions.items():
        if conflict_id in by_id:
            resolve_conflict_value(by_id[conflict_id], resolution)
    unresolved = [
        c for c in conflicts
        if c.id not in resolutions and not c.auto_resolvable
    ]
    return unresolved, unknown
