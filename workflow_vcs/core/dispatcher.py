"""
Operation Dispatcher
Registry and router for all version-control operations.
Backs the umbrella MCP tools and the generic HTTP operation endpoint.
"""
import inspect
import json
from typing import Any, Dict, Optional, Union

from workflow_vcs.core.client import safe_tool
from workflow_vcs.core.errors import ValidationError
from workflow_vcs.core.logging import gateway_logger as logger

# Change tracking
from workflow_vcs.services.tracking import (
    compare_versions,
    create_snapshot,
    get_version_history,
    restore_version,
    track_changes,
)
# Branching & merge
from workflow_vcs.services.branching import (
    abandon_branch,
    create_branch,
    list_branches,
    merge_branches,
    preview_merge,
    resolve_conflicts,
)

TRACKING_OPERATIONS = {
    "get_version_history": get_version_history,
    "compare_versions": compare_versions,
    "create_snapshot": create_snapshot,
    "restore_version": restore_version,
    "track_changes": track_changes,
}

MERGE_OPERATIONS = {
    "create_branch": create_branch,
    "list_branches": list_branches,
    "preview_merge": preview_merge,
    "merge_branches": merge_branches,
    "resolve_conflicts": resolve_conflicts,
    "abandon_branch": abandon_branch,
}

# Registry Mapping
REGISTRY = {**TRACKING_OPERATIONS, **MERGE_OPERATIONS}


def _error(message: str, **extra: Any) -> str:
    return json.dumps({
        "success": False,
        "status": "error",
        "code": 400,
        "error_type": "validation_error",
        "message": message,
        **extra
    }, indent=2)


async def dispatch(operation: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Routes an operation request to the service layer."""
    params = params or {}
    if operation not in REGISTRY:
        return json.dumps({
            "success": False,
            "status": "error",
            "code": 404,
            "error_type": "not_found",
            "message": f"Operation '{operation}' not found in registry.",
            "available_operations": list(REGISTRY.keys())
        }, indent=2)

    func = REGISTRY[operation]
    signature = inspect.signature(func)
    unknown = sorted(set(params) - set(signature.parameters))
    if unknown:
        return _error(f"Unknown parameters for {operation}: {', '.join(unknown)}")
    missing = [
        name for name, p in signature.parameters.items()
        if p.default is inspect.Parameter.empty and name not in params
    ]
    if missing:
        return _error(f"Missing required parameters for {operation}: {', '.join(missing)}")

    logger.info(f"Dispatching {operation}")
    return await func(**params)


def get_skill_manifest() -> Dict[str, Any]:
    """Returns every available operation with its parameters for discovery."""
    operations = []
    for name, func in REGISTRY.items():
        signature = inspect.signature(func)
        operations.append({
            "name": name,
            "group": "track_workflow_changes" if name in TRACKING_OPERATIONS else "merge_workflow_changes",
            "description": (inspect.getdoc(func) or "").split("\n")[0],
            "parameters": {
                p.name: {"required": p.default is inspect.Parameter.empty}
                for p in signature.parameters.values()
            }
        })
    return {
        "total": len(REGISTRY),
        "operations": operations
    }


# =============================================================================
# UMBRELLA TOOLS
# =============================================================================
@safe_tool
async def track_workflow_changes(
    workflow_id: str,
    operation: str,
    from_version: Optional[str] = None,
    to_version: Optional[str] = None,
    snapshot_name: Optional[str] = None,
    include_details: bool = False,
    limit: Optional[int] = None,
    branch: Optional[str] = None,
    author: Optional[str] = None
) -> str:
    """
    Track workflow changes with version control, diff analysis and change history.

    Args:
        workflow_id: ID of the workflow to track changes for.
        operation: get_version_history | compare_versions | create_snapshot | restore_version | track_changes.
        from_version: Source version for comparison, or the version to restore.
        to_version: Target version for comparison.
        snapshot_name: Name for a manual snapshot.
        include_details: Include detailed change data in results.
        limit: Maximum number of versions returned by get_version_history.
        branch: Branch to operate on (default branch when omitted).
        author: Recorded author for new versions.

    Returns:
        JSON string with the operation result.
    """
    if operation == "get_version_history":
        return await get_version_history(workflow_id, limit=limit, branch=branch, include_details=include_details)
    if operation == "compare_versions":
        return await compare_versions(workflow_id, from_version, to_version, include_details=include_details)
    if operation == "create_snapshot":
        return await create_snapshot(workflow_id, snapshot_name=snapshot_name, branch=branch, author=author)
    if operation == "restore_version":
        return await restore_version(workflow_id, from_version, branch=branch, author=author)
    if operation == "track_changes":
        return await track_changes(workflow_id, branch=branch, author=author)
    raise ValidationError(
        f"Unknown track_workflow_changes operation '{operation}'",
        context=f"available: {', '.join(TRACKING_OPERATIONS)}"
    )


@safe_tool
async def merge_workflow_changes(
    workflow_id: str,
    operation: str,
    source_branch: Optional[str] = None,
    target_branch: Optional[str] = None,
    base_version: Optional[str] = None,
    branch_name: Optional[str] = None,
    conflict_resolutions: Union[str, Dict[str, Any], None] = None,
    author: Optional[str] = None,
    description: Optional[str] = None
) -> str:
    """
    Merge workflow changes with conflict detection, resolution and branch management.

    Args:
        workflow_id: ID of the workflow to perform merge operations on.
        operation: merge_branches | resolve_conflicts | preview_merge | create_branch | list_branches | abandon_branch.
        source_branch: Branch being merged in.
        target_branch: Receiving branch (default branch when omitted).
        base_version: Base version for branch creation.
        branch_name: Branch to create or abandon.
        conflict_resolutions: Conflict id -> resolution strategy (or {"strategy", "value"}).
        author: Recorded author.
        description: Description for a new branch.

    Returns:
        JSON string with the operation result.
    """
    if operation == "create_branch":
        return await create_branch(
            workflow_id, branch_name,
            base_version=base_version, author=author, description=description
        )
    if operation == "list_branches":
        return await list_branches(workflow_id)
    if operation == "preview_merge":
        return await preview_merge(workflow_id, source_branch, target_branch)
    if operation == "merge_branches":
        return await merge_branches(
            workflow_id, source_branch, target_branch,
            conflict_resolutions=conflict_resolutions, author=author
        )
    if operation == "resolve_conflicts":
        return await resolve_conflicts(
            workflow_id, source_branch, conflict_resolutions, target_branch=target_branch
        )
    if operation == "abandon_branch":
        return await abandon_branch(workflow_id, branch_name)
    raise ValidationError(
        f"Unknown merge_workflow_changes operation '{operation}'",
        context=f"available: {', '.join(MERGE_OPERATIONS)}"
    )
