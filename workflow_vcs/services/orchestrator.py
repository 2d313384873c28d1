"""
Merge Orchestrator
Branch-level workflow collaboration: create, list, preview, merge, stage
conflict resolutions and abandon.

Lock discipline: the source tip is read under the source lock, which is
released before the target lock is taken for compute, push and commit.
Two merges in opposite directions therefore never wait on each other.
"""
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from workflow_vcs.core.errors import ValidationError
from workflow_vcs.core.logging import merge_logger as logger
from workflow_vcs.models.schemas import (
    BranchStatus,
    ConflictResolution,
    ConflictType,
    MergeConflict,
    MergePreview,
    MergeResult,
    Severity,
    WorkflowBranch,
    WorkflowDocument,
    WorkflowNode,
    WorkflowVersion,
)
from workflow_vcs.services import merge as merge_engine
from workflow_vcs.services.catalog import NodeTypeCatalog
from workflow_vcs.services.diff import classify_change, describe_change, diff_documents
from workflow_vcs.services.versioning import VersionService


class BranchMergeOutcome(BaseModel):
    """Result of merging one branch into another."""
    source: WorkflowBranch
    target: WorkflowBranch
    result: MergeResult
    version: Optional[WorkflowVersion] = None
    base_version_id: Optional[str] = None
    up_to_date: bool = False


class StagedResolutions(BaseModel):
    preview: MergePreview
    staged: Dict[str, ConflictResolution] = Field(default_factory=dict)
    remaining: List[MergeConflict] = Field(default_factory=list)


class MergeOrchestrator:
    def __init__(self, versions: VersionService, catalog: Optional[NodeTypeCatalog] = None):
        self.versions = versions
        self.catalog = catalog or NodeTypeCatalog()
        # (source branch id, target branch id) -> resolutions waiting for the next merge
        self._staged: Dict[Tuple[str, str], Dict[str, ConflictResolution]] = {}
        self._conflicts_resolved: Dict[str, int] = {}

    # =========================================================================
    # BRANCHES
    # =========================================================================
    async def create_branch(
        self,
        workflow_id: str,
        name: str,
        base_version_id: Optional[str] = None,
        author: Optional[str] = None,
        description: Optional[str] = None
    ) -> WorkflowBranch:
        return await self.versions.create_branch(
            workflow_id, name,
            base_version_id=base_version_id,
            author=author,
            description=description
        )

    def list_branches(self, workflow_id: str) -> Tuple[List[WorkflowBranch], Dict[str, Any]]:
        branches = self.versions.repository.list_branches(workflow_id)
        statistics = {
            "total_branches": len(branches),
            "active_branches": sum(1 for b in branches if b.status == BranchStatus.ACTIVE),
            "merged_branches": sum(1 for b in branches if b.status == BranchStatus.MERGED),
            "abandoned_branches": sum(1 for b in branches if b.status == BranchStatus.ABANDONED),
            "conflicts_resolved": self._conflicts_resolved.get(workflow_id, 0)
        }
        return branches, statistics

    async def abandon_branch(self, workflow_id: str, branch_name: str) -> WorkflowBranch:
        if not branch_name:
            raise ValidationError("branch_name is required for abandon_branch operation")
        branch = self.versions.find_branch(workflow_id, branch_name)
        branch = await self.versions.abandon_branch(branch.id)
        for key in [k for k in self._staged if branch.id in k]:
            del self._staged[key]
        return branch

    # =========================================================================
    # MERGE PLANNING
    # =========================================================================
    def _pair(
        self,
        workflow_id: str,
        source_name: str,
        target_name: Optional[str]
    ) -> Tuple[WorkflowBranch, WorkflowBranch]:
        if not source_name:
            raise ValidationError("source_branch is required for merge operations")
        source = self.versions.find_branch(workflow_id, source_name)
        target = self.versions.find_branch(workflow_id, target_name)
        if source.id == target.id:
            raise ValidationError(f"Cannot merge branch '{source.name}' into itself")
        self.versions.require_active(source)
        self.versions.require_active(target)
        return source, target

    def _merge_base(
        self,
        source_tip: WorkflowVersion,
        target_tip: WorkflowVersion
    ) -> Tuple[Optional[WorkflowVersion], WorkflowDocument]:
        ancestor = self.versions.common_ancestor(source_tip, target_tip)
        if ancestor is not None:
            return ancestor, ancestor.snapshot
        # unrelated histories: everything on both sides counts as new
        logger.warning(f"No common ancestor for {source_tip.id} and {target_tip.id}; merging from empty base")
        return None, WorkflowDocument(id=target_tip.workflow_id, name="")

    def _catalog_hints(self, conflicts: List[MergeConflict]) -> List[str]:
        """Point out catalog defaults a node would miss after a type change."""
        hints = []
        if not len(self.catalog):
            return hints
        for conflict in conflicts:
            if conflict.type != ConflictType.NODE or conflict.severity != Severity.CRITICAL:
                continue
            for side, value in (("source", conflict.source_value), ("target", conflict.target_value)):
                if value is None:
                    continue
                try:
                    node = WorkflowNode.model_validate(value)
                except PydanticValidationError:
                    continue
                missing = self.catalog.suggest_parameters(node)
                if missing:
                    hints.append(
                        f"Node '{node.name}' as {node.type} ({side}) lacks catalog defaults: "
                        f"{', '.join(sorted(missing))}"
                    )
        return hints

    async def preview_merge(
        self,
        workflow_id: str,
        source_name: str,
        target_name: Optional[str] = None
    ) -> Tuple[WorkflowBranch, WorkflowBranch, MergePreview]:
        """
        Predict merging `source_name` into `target_name` (default branch when omitted).
        Tips are copied under their locks; the three-way comparison runs off-lock.
        """
        source, target = self._pair(workflow_id, source_name, target_name)
        source_tip = await self.versions.read_tip(source.id)
        target_tip = await self.versions.read_tip(target.id)
        ancestor, base = self._merge_base(source_tip, target_tip)

        preview = merge_engine.preview_merge(base, source_tip.snapshot, target_tip.snapshot)
        preview.base_version_id = ancestor.id if ancestor else None
        preview.source_version_id = source_tip.id
        preview.target_version_id = target_tip.id
        preview.risk_assessment.recommendations.extend(self._catalog_hints(preview.conflicts))

        logger.info(
            f"Preview {source.name} -> {target.name}: {preview.summary.total_conflicts} conflict(s), "
            f"risk {preview.risk_assessment.risk_level.value}"
        )
        return source, target, preview

    async def resolve_conflicts(
        self,
        workflow_id: str,
        source_name: str,
        target_name: Optional[str],
        resolutions: Dict[str, ConflictResolution]
    ) -> StagedResolutions:
        """
        Validate resolutions against the current preview and stage them for the pair.

        Raises:
            ValidationError: no resolutions given, an id matches no current
                conflict, or a resolution cannot apply to its conflict.
        """
        if not resolutions:
            raise ValidationError("resolutions are required for resolve_conflicts operation")
        source, target, preview = await self.preview_merge(workflow_id, source_name, target_name)

        key = (source.id, target.id)
        current_ids = {conflict.id for conflict in preview.conflicts}
        # drop staged entries whose conflict disappeared since they were staged
        staged = {cid: r for cid, r in self._staged.get(key, {}).items() if cid in current_ids}
        staged.update(resolutions)

        remaining, unknown = merge_engine.split_resolutions(preview.conflicts, staged)
        if unknown:
            raise ValidationError(
                f"Unknown conflict id(s): {', '.join(unknown)}",
                context=f"current conflicts: {', '.join(sorted(current_ids)) or 'none'}"
            )

        self._staged[key] = staged
        logger.info(f"Staged {len(staged)} resolution(s) for {source.name} -> {target.name}; {len(remaining)} remaining")
        return StagedResolutions(preview=preview, staged=staged, remaining=remaining)

    # =========================================================================
    # MERGE
    # =========================================================================
    async def merge_branches(
        self,
        workflow_id: str,
        source_name: str,
        target_name: Optional[str] = None,
        resolutions: Optional[Dict[str, ConflictResolution]] = None,
        author: Optional[str] = None
    ) -> BranchMergeOutcome:
        """
        Merge `source_name` into `target_name`, all or nothing.

        Args:
            workflow_id: Workflow owning both branches.
            source_name: Branch being merged in.
            target_name: Receiving branch; the default branch when omitted.
            resolutions: Per-conflict resolutions, applied over staged ones.
            author: Recorded on the merge version.

        Returns:
            BranchMergeOutcome. A blocked merge carries the remaining conflicts
            and leaves the target tip untouched.
        """
        source, target = self._pair(workflow_id, source_name, target_name)
        source_tip = await self.versions.read_tip(source.id)
        key = (source.id, target.id)
        combined = {**self._staged.get(key, {}), **(resolutions or {})}

        async with self.versions.lock(target.id):
            target = self.versions.get_branch(target.id)
            self.versions.require_active(target)
            target_tip = self.versions.tip(target.id)
            ancestor, base = self._merge_base(source_tip, target_tip)

            if ancestor is not None and ancestor.id == source_tip.id:
                logger.info(f"'{target.name}' already contains {source_tip.id}")
                return BranchMergeOutcome(
                    source=source,
                    target=target,
                    result=MergeResult(success=True, message="Already up to date"),
                    base_version_id=ancestor.id,
                    up_to_date=True
                )

            result = merge_engine.merge_documents(base, source_tip.snapshot, target_tip.snapshot, combined)
            if not result.success:
                logger.warning(
                    f"Merge {source.name} -> {target.name} blocked by {len(result.conflicts)} conflict(s)"
                )
                return BranchMergeOutcome(
                    source=source,
                    target=target,
                    result=result,
                    base_version_id=ancestor.id if ancestor else None
                )

            merged = result.merged_document
            diff = diff_documents(target_tip.snapshot, merged, from_version_id=target_tip.id)
            version = self.versions.new_version(
                target, target_tip, merged,
                change_type=classify_change(diff),
                tags=["merge", f"from-{source.name}"],
                author=author,
                name=f"Merge {source.name} into {target.name}",
                description=f"Merged {source.name} (v{source_tip.version_number}): {describe_change(diff)}",
                diff=diff,
                merge_parent_id=source_tip.id
            )
            version = await self.versions.push_and_record(target, version)
            target = self.versions.get_branch(target.id)

        if target.is_default:
            source = await self.versions.mark_merged(source.id, source_tip.id)
        self._staged.pop(key, None)
        self._conflicts_resolved[workflow_id] = (
            self._conflicts_resolved.get(workflow_id, 0) + len(result.applied_resolutions)
        )
        logger.info(f"Merged {source.name} into {target.name} as v{version.version_number}")
        return BranchMergeOutcome(
            source=source,
            target=target,
            result=result,
            version=version,
            base_version_id=ancestor.id if ancestor else None
        )
