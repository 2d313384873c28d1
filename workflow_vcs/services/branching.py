"""
Branching & Merge Service - Collaborative Workflow Development
Create and list branches, preview and perform three-way merges, stage
conflict resolutions and abandon branches.
"""
import json
from typing import Any, Dict, Optional, Union

from workflow_vcs.core.client import safe_tool
from workflow_vcs.core.errors import require_params
from workflow_vcs.core.logging import gateway_logger as logger
from workflow_vcs.models.opaque import parse_json_safe
from workflow_vcs.models.schemas import WorkflowBranch
from workflow_vcs.services.merge import parse_resolutions
from workflow_vcs.services.registry import get_merge_orchestrator


def _branch_view(branch: WorkflowBranch) -> Dict[str, Any]:
    return branch.model_dump(mode="json")


@safe_tool
async def create_branch(
    workflow_id: str,
    branch_name: str,
    base_version: Optional[str] = None,
    author: Optional[str] = None,
    description: Optional[str] = None
) -> str:
    """
    Create a branch from the live workflow.

    Args:
        workflow_id: ID of the workflow.
        branch_name: Name of the new branch (unique per workflow).
        base_version: Version the branch descends from (default branch tip when omitted).
        author: Recorded creator.
        description: Optional free text.

    Returns:
        JSON string with the new branch.
    """
    require_params(
        {"workflow_id": workflow_id, "branch_name": branch_name},
        ["workflow_id", "branch_name"],
        "create_branch"
    )
    logger.info(f"Creating branch '{branch_name}' for workflow {workflow_id}")

    branch = await get_merge_orchestrator().create_branch(
        workflow_id, branch_name,
        base_version_id=base_version,
        author=author,
        description=description
    )
    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "create_branch",
        "workflow_id": workflow_id,
        "branch": _branch_view(branch),
        "message": f"Branch '{branch.name}' created"
    }, indent=2)


@safe_tool
async def list_branches(workflow_id: str) -> str:
    """
    List the branches of a workflow with merge statistics.

    Args:
        workflow_id: ID of the workflow.

    Returns:
        JSON string with branches in creation order.
    """
    require_params({"workflow_id": workflow_id}, ["workflow_id"], "list_branches")
    logger.info(f"Listing branches for workflow {workflow_id}")

    branches, statistics = get_merge_orchestrator().list_branches(workflow_id)
    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "list_branches",
        "workflow_id": workflow_id,
        "branches": [_branch_view(b) for b in branches],
        "statistics": statistics
    }, indent=2)


@safe_tool
async def preview_merge(
    workflow_id: str,
    source_branch: str,
    target_branch: Optional[str] = None
) -> str:
    """
    Predict a merge without changing anything.

    Args:
        workflow_id: ID of the workflow.
        source_branch: Branch to merge in.
        target_branch: Receiving branch (default branch when omitted).

    Returns:
        JSON string with conflicts, change summary, risk and estimated effort.
    """
    require_params(
        {"workflow_id": workflow_id, "source_branch": source_branch},
        ["workflow_id", "source_branch"],
        "preview_merge"
    )
    logger.info(f"Previewing merge {source_branch} -> {target_branch or 'default'} for {workflow_id}")

    source, target, preview = await get_merge_orchestrator().preview_merge(
        workflow_id, source_branch, target_branch
    )
    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "preview_merge",
        "workflow_id": workflow_id,
        "source_branch": source.name,
        "target_branch": target.name,
        "preview": preview.model_dump(mode="json")
    }, indent=2)


@safe_tool
async def merge_branches(
    workflow_id: str,
    source_branch: str,
    target_branch: Optional[str] = None,
    conflict_resolutions: Union[str, Dict[str, Any], None] = None,
    author: Optional[str] = None
) -> str:
    """
    Merge one branch into another.
    Resolutions given here are applied over those staged with resolve_conflicts.

    Args:
        workflow_id: ID of the workflow.
        source_branch: Branch to merge in.
        target_branch: Receiving branch (default branch when omitted).
        conflict_resolutions: {conflict_id: strategy} or {conflict_id: {"strategy", "value"}}.
        author: Recorded on the merge version.

    Returns:
        JSON string with the merge version, or success false and the
        conflicts that still need a resolution.
    """
    require_params(
        {"workflow_id": workflow_id, "source_branch": source_branch},
        ["workflow_id", "source_branch"],
        "merge_branches"
    )
    logger.info(f"Merging {source_branch} -> {target_branch or 'default'} for {workflow_id}")
    resolutions = parse_resolutions(parse_json_safe(conflict_resolutions, "conflict_resolutions"))

    outcome = await get_merge_orchestrator().merge_branches(
        workflow_id, source_branch, target_branch,
        resolutions=resolutions,
        author=author
    )
    result = outcome.result
    return json.dumps({
        "success": result.success,
        "status": "success" if result.success else "blocked",
        "operation": "merge_branches",
        "workflow_id": workflow_id,
        "source_branch": _branch_view(outcome.source),
        "target_branch": _branch_view(outcome.target),
        "base_version_id": outcome.base_version_id,
        "version": outcome.version.to_summary() if outcome.version else None,
        "conflicts": [c.model_dump(mode="json") for c in result.conflicts],
        "applied_resolutions": {k: v.value for k, v in result.applied_resolutions.items()},
        "auto_resolved": result.auto_resolved,
        "ignored_resolutions": result.ignored_resolutions,
        "message": result.message
    }, indent=2)


@safe_tool
async def resolve_conflicts(
    workflow_id: str,
    source_branch: str,
    conflict_resolutions: Union[str, Dict[str, Any]],
    target_branch: Optional[str] = None
) -> str:
    """
    Stage resolutions for a pending merge and report what is still unresolved.

    Args:
        workflow_id: ID of the workflow.
        source_branch: Branch to merge in.
        conflict_resolutions: {conflict_id: strategy} or {conflict_id: {"strategy", "value"}}.
        target_branch: Receiving branch (default branch when omitted).

    Returns:
        JSON string with staged resolutions and remaining conflicts.
    """
    require_params(
        {"workflow_id": workflow_id, "source_branch": source_branch,
         "conflict_resolutions": conflict_resolutions},
        ["workflow_id", "source_branch", "conflict_resolutions"],
        "resolve_conflicts"
    )
    resolutions = parse_resolutions(parse_json_safe(conflict_resolutions, "conflict_resolutions"))
    logger.info(f"Staging {len(resolutions)} resolution(s) for {source_branch} in {workflow_id}")

    staged = await get_merge_orchestrator().resolve_conflicts(
        workflow_id, source_branch, target_branch, resolutions
    )
    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "resolve_conflicts",
        "workflow_id": workflow_id,
        "staged_resolutions": {k: r.model_dump(mode="json") for k, r in staged.staged.items()},
        "remaining_conflicts": [c.model_dump(mode="json") for c in staged.remaining],
        "ready_to_merge": not staged.remaining,
        "message": (
            "All conflicts resolved; merge_branches can proceed"
            if not staged.remaining
            else f"{len(staged.remaining)} conflicts still need a resolution"
        )
    }, indent=2)


@safe_tool
async def abandon_branch(workflow_id: str, branch_name: str) -> str:
    """
    Close a branch without merging it. The default branch cannot be abandoned.

    Args:
        workflow_id: ID of the workflow.
        branch_name: Branch to abandon.

    Returns:
        JSON string with the abandoned branch.
    """
    require_params(
        {"workflow_id": workflow_id, "branch_name": branch_name},
        ["workflow_id", "branch_name"],
        "abandon_branch"
    )
    logger.info(f"Abandoning branch '{branch_name}' of workflow {workflow_id}")

    branch = await get_merge_orchestrator().abandon_branch(workflow_id, branch_name)
    return json.dumps({
        "success": True,
        "status": "success",
        "operation": "abandon_branch",
        "workflow_id": workflow_id,
        "branch": _branch_view(branch),
        "message": f"Branch '{branch.name}' abandoned"
    }, indent=2)
