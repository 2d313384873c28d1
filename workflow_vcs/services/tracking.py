"""
Change Tracking Service - Workflow History
Snapshots, automatic change tracking, history, comparison and restoration.
"""
import json
from typing import Any, Dict, Optional, Union

from workflow_vcs.core.client import safe_tool
from workflow_vcs.core.errors import ValidationError, require_params
from workflow_vcs.core.logging import gateway_logger as logger
from workflow_vcs.models.opaque import parse_json_safe
from workflow_vcs.models.schemas import WorkflowDocument, WorkflowVersion
from workflow_vcs.services.diff import assess_diff
from workflow_vcs.services.registry import get_version_service


def _version_view(version: WorkflowVersion, include_snapshot: bool = False) -> Dict[str, Any]:
    data = version.to_summary()
    if include_snapshot:
        data["snapshot"] = version.snapshot.model_dump(mode="json")
    return data


@safe_tool
async def get_version_history(
    workflow_id: str,
    limit: Optional[int] = None,
    branch: Optional[str] = None,
    include_details: bool = False
) -> str:
    """
    List the versions of a workflow, newest first.

    Args:
        workflow_id: ID of the workflow.
        limit: Maximum number of versions to return (defaults to VCS_HISTORY_LIMIT).
        branch: Restrict the history to one branch.
        include_details: Include the full snapshot of every version.

    Returns:
        JSON string with versions and history statistics.
    """
    require_params({"workflow_id": workflow_id}, ["workflow_id"], "get_version_history")
    logger.info(f"Reading version history for workflow {workflow_id}")
    if limit is not None and limit < 1:
        raise ValidationError("limit must be a positive integer")

    versions = get_version_service()
    selected = await versions.resolve_branch(workflow_id, branch)
    history = versions.list_history(workflow_id, limit, selected.id if branch else None)

    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "get_version_history",
        "workflow_id": workflow_id,
        "branch": selected.name if branch else None,
        "versions": [_version_view(v, include_details) for v in history],
        "statistics": versions.history_statistics(workflow_id)
    }, indent=2)


@safe_tool
async def compare_versions(
    workflow_id: str,
    from_version: str,
    to_version: str,
    include_details: bool = True
) -> str:
    """
    Diff two stored versions of a workflow.

    Args:
        workflow_id: ID of the workflow.
        from_version: Version the comparison starts from.
        to_version: Version the comparison ends at.
        include_details: Include added/removed/modified node details.

    Returns:
        JSON string with the diff, a risk insight and both version summaries.
    """
    require_params(
        {"workflow_id": workflow_id, "from_version": from_version, "to_version": to_version},
        ["workflow_id", "from_version", "to_version"],
        "compare_versions"
    )
    logger.info(f"Comparing {from_version} -> {to_version} for workflow {workflow_id}")

    older, newer, diff = get_version_service().compare_versions(workflow_id, from_version, to_version)
    comparison = diff.model_dump(mode="json")
    if not include_details:
        comparison.pop("node_changes")

    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "compare_versions",
        "workflow_id": workflow_id,
        "from_version": older.to_summary(),
        "to_version": newer.to_summary(),
        "comparison": comparison,
        "insights": assess_diff(diff)
    }, indent=2)


@safe_tool
async def create_snapshot(
    workflow_id: str,
    snapshot_name: Optional[str] = None,
    branch: Optional[str] = None,
    author: Optional[str] = None
) -> str:
    """
    Record the current workflow as a version, changed or not.

    Args:
        workflow_id: ID of the workflow.
        snapshot_name: Optional name for the version.
        branch: Branch to record on (default branch when omitted).
        author: Recorded author.

    Returns:
        JSON string with the new version.
    """
    require_params({"workflow_id": workflow_id}, ["workflow_id"], "create_snapshot")
    logger.info(f"Creating snapshot of workflow {workflow_id}")

    versions = get_version_service()
    selected = await versions.resolve_branch(workflow_id, branch, author)
    version = await versions.create_snapshot(selected.id, name=snapshot_name, author=author)

    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "create_snapshot",
        "workflow_id": workflow_id,
        "branch": selected.name,
        "version": version.to_summary(),
        "message": f"Snapshot '{version.name}' created as version {version.version_number}"
    }, indent=2)


@safe_tool
async def restore_version(
    workflow_id: str,
    version_id: str,
    branch: Optional[str] = None,
    author: Optional[str] = None
) -> str:
    """
    Restore an earlier version as the new tip of a branch.
    On the default branch the restored workflow is pushed back to n8n.

    Args:
        workflow_id: ID of the workflow.
        version_id: Version to restore (any branch of the same workflow).
        branch: Branch to restore on (default branch when omitted).
        author: Recorded author.

    Returns:
        JSON string with the restoration version.
    """
    require_params(
        {"workflow_id": workflow_id, "version_id": version_id},
        ["workflow_id", "version_id"],
        "restore_version"
    )
    logger.info(f"Restoring workflow {workflow_id} to {version_id}")

    versions = get_version_service()
    selected = await versions.resolve_branch(workflow_id, branch, author)
    version = await versions.restore_version(selected.id, version_id, author=author)

    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "restore_version",
        "workflow_id": workflow_id,
        "branch": selected.name,
        "restored_from": version_id,
        "version": version.to_summary(),
        "pushed_to_engine": selected.is_default and versions.push_to_engine,
        "message": f"Restored to {version_id} as version {version.version_number}"
    }, indent=2)


@safe_tool
async def track_changes(
    workflow_id: str,
    branch: Optional[str] = None,
    author: Optional[str] = None,
    document: Union[str, Dict[str, Any], None] = None
) -> str:
    """
    Commit the workflow's current state if it differs from the branch tip.

    Args:
        workflow_id: ID of the workflow.
        branch: Branch to track on (default branch when omitted).
        author: Recorded author.
        document: Optional workflow JSON to commit instead of pulling it from n8n.

    Returns:
        JSON string saying whether a new version was recorded.
    """
    require_params({"workflow_id": workflow_id}, ["workflow_id"], "track_changes")
    logger.info(f"Tracking changes for workflow {workflow_id}")

    payload = parse_json_safe(document, "document")
    snapshot = WorkflowDocument.model_validate(payload) if payload is not None else None

    versions = get_version_service()
    selected = await versions.resolve_branch(workflow_id, branch, author)
    version = await versions.commit_if_changed(selected.id, document=snapshot, author=author)
    tip = version or versions.tip(selected.id)

    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "track_changes",
        "workflow_id": workflow_id,
        "branch": selected.name,
        "changes_detected": version is not None,
        "version": tip.to_summary(),
        "message": (
            f"Recorded version {version.version_number}: {version.description}"
            if version else f"No changes since version {tip.version_number}"
        )
    }, indent=2)
