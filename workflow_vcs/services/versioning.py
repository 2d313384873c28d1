"""
Version Service
Branch-aware version history for n8n workflows.

Pulls the live workflow from the engine, snapshots it into a VersionRepository
and keeps exactly one active version (the tip) per branch. Writes to a branch
are serialized by that branch's asyncio lock.
"""
import asyncio
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from workflow_vcs.core.config import settings
from workflow_vcs.core.errors import NotFoundError, ValidationError
from workflow_vcs.core.logging import store_logger as logger
from workflow_vcs.models.schemas import (
    BranchStatus,
    ChangeSummary,
    ChangeType,
    WorkflowBranch,
    WorkflowDiff,
    WorkflowDocument,
    WorkflowVersion,
)
from workflow_vcs.models.validation import validate_document
from workflow_vcs.services.diff import (
    change_tags,
    classify_change,
    describe_change,
    diff_documents,
)
from workflow_vcs.services.store import VersionRepository


class DocumentSource(Protocol):
    """The execution engine as seen by the version store."""

    async def get_document(self, workflow_id: str) -> WorkflowDocument:
        ...

    async def update_document(self, workflow_id: str, document: WorkflowDocument) -> WorkflowDocument:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def summarize_diff(diff: WorkflowDiff) -> ChangeSummary:
    summary = diff.summary
    return ChangeSummary(
        summary="Multiple changes" if summary.change_count > 1 else "Single change",
        added_nodes=summary.added_count,
        removed_nodes=summary.removed_count,
        modified_nodes=summary.modified_count,
        changed_connections=summary.changed_connections
    )


class VersionService:
    def __init__(
        self,
        repository: VersionRepository,
        engine: DocumentSource,
        default_branch: Optional[str] = None,
        default_author: Optional[str] = None,
        push_to_engine: Optional[bool] = None
    ):
        self.repository = repository
        self.engine = engine
        self.default_branch_name = default_branch or settings.default_branch
        self.default_author = default_author or settings.default_author
        self.push_to_engine = settings.push_to_engine if push_to_engine is None else push_to_engine
        self._locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # LOCKS & ENGINE
    # =========================================================================
    def lock(self, key: str) -> asyncio.Lock:
        """One lock per branch id (and per 'workflow:<id>' for branch creation)."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def pull(self, workflow_id: str) -> WorkflowDocument:
        return await self.engine.get_document(workflow_id)

    async def push(self, branch: WorkflowBranch, document: WorkflowDocument) -> None:
        """Only the default branch mirrors the live workflow in n8n."""
        if branch.is_default and self.push_to_engine:
            await self.engine.update_document(branch.workflow_id, document)

    # =========================================================================
    # LOOKUPS
    # =========================================================================
    def get_branch(self, branch_id: str) -> WorkflowBranch:
        branch = self.repository.get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch '{branch_id}' not found")
        return branch

    def get_default_branch(self, workflow_id: str) -> Optional[WorkflowBranch]:
        for branch in self.repository.list_branches(workflow_id):
            if branch.is_default:
                return branch
        return None

    def find_branch(self, workflow_id: str, name: Optional[str] = None) -> WorkflowBranch:
        """Branch by name; no name means the default branch."""
        if not name:
            branch = self.get_default_branch(workflow_id)
            if branch is None:
                raise NotFoundError(f"Workflow '{workflow_id}' has no tracked history yet")
            return branch
        branch = self.repository.find_branch(workflow_id, name)
        if branch is None:
            raise NotFoundError(f"Branch '{name}' not found for workflow '{workflow_id}'")
        return branch

    def get_version(self, workflow_id: str, version_id: str) -> WorkflowVersion:
        version = self.repository.get_version(version_id)
        if version is None or version.workflow_id != workflow_id:
            raise NotFoundError(f"Version '{version_id}' not found for workflow '{workflow_id}'")
        return version

    def tip(self, branch_id: str) -> WorkflowVersion:
        version = self.repository.get_tip(branch_id)
        if version is None:
            raise NotFoundError(f"Branch '{branch_id}' has no versions")
        return version

    async def read_tip(self, branch_id: str) -> WorkflowVersion:
        """Consistent copy of the tip, taken under the branch lock."""
        async with self.lock(branch_id):
            return self.tip(branch_id)

    @staticmethod
    def require_active(branch: WorkflowBranch) -> None:
        if branch.status != BranchStatus.ACTIVE:
            raise ValidationError(
                f"Branch '{branch.name}' is {branch.status.value} and accepts no further changes"
            )

    @staticmethod
    def _check_document(workflow_id: str, document: WorkflowDocument) -> None:
        if document.id != workflow_id:
            raise ValidationError(
                f"Document id '{document.id}' does not match workflow '{workflow_id}'"
            )
        validate_document(document)

    # =========================================================================
    # VERSION CONSTRUCTION
    # =========================================================================
    def new_version(
        self,
        branch: WorkflowBranch,
        parent: Optional[WorkflowVersion],
        document: WorkflowDocument,
        change_type: ChangeType,
        tags: List[str],
        author: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        diff: Optional[WorkflowDiff] = None,
        merge_parent_id: Optional[str] = None
    ) -> WorkflowVersion:
        number = parent.version_number + 1 if parent and parent.branch_id == branch.id else 1
        return WorkflowVersion(
            id=new_id("version"),
            workflow_id=branch.workflow_id,
            branch_id=branch.id,
            version_number=number,
            name=name or f"Version {number}",
            description=description,
            author=author or self.default_author,
            created_at=utc_now(),
            change_type=change_type,
            tags=tags,
            snapshot=document.model_copy(deep=True),
            change_summary=summarize_diff(diff) if diff else None,
            parent_version_id=parent.id if parent else None,
            merge_parent_id=merge_parent_id
        )

    def record(self, branch: WorkflowBranch, version: WorkflowVersion) -> WorkflowVersion:
        """Make `version` the new tip of `branch`. Caller holds the branch lock."""
        changes = 0
        if version.change_summary:
            summary = version.change_summary
            changes = summary.added_nodes + summary.removed_nodes + summary.modified_nodes
        branch = branch.model_copy(update={
            "last_modified": version.created_at,
            "change_count": branch.change_count + changes
        })
        stored = self.repository.commit(version, branch)
        logger.info(
            f"Branch '{branch.name}' of {branch.workflow_id} is now at v{stored.version_number} "
            f"({stored.change_type.value})"
        )
        return stored

    async def push_and_record(self, branch: WorkflowBranch, version: WorkflowVersion) -> WorkflowVersion:
        """
        Push the new tip to n8n, then store it. Caller holds the branch lock.

        n8n is written first so a rejected push records nothing. When the store
        fails after a successful push, n8n runs a state the history lacks until
        the next track_changes records it as an ordinary change.
        """
        await self.push(branch, version.snapshot)
        try:
            return self.record(branch, version)
        except Exception:
            if branch.is_default and self.push_to_engine:
                logger.error(
                    f"Workflow {branch.workflow_id} was pushed to n8n but v{version.version_number} "
                    f"was not stored; run track_changes on '{branch.name}' to record it"
                )
            raise

    # =========================================================================
    # BRANCHES
    # =========================================================================
    async def _create_default(self, workflow_id: str, document: WorkflowDocument, author: str) -> WorkflowBranch:
        now = utc_now()
        branch = WorkflowBranch(
            id=new_id("branch"),
            name=self.default_branch_name,
            workflow_id=workflow_id,
            is_default=True,
            created_by=author,
            created_at=now,
            last_modified=now,
            description="Main development branch"
        )
        version = self.new_version(
            branch, None, document,
            change_type=ChangeType.SNAPSHOT,
            tags=["initial", "baseline"],
            author=author,
            name="Initial Version",
            description="First tracked version of the workflow"
        )
        self.repository.add_branch(branch, version)
        logger.info(f"Started tracking workflow {workflow_id} on '{branch.name}'")
        return branch

    async def ensure_default_branch(self, workflow_id: str, author: Optional[str] = None) -> WorkflowBranch:
        """Return the default branch, snapshotting the live workflow if it does not exist yet."""
        existing = self.get_default_branch(workflow_id)
        if existing is not None:
            return existing
        document = await self.pull(workflow_id)
        async with self.lock(f"workflow:{workflow_id}"):
            existing = self.get_default_branch(workflow_id)
            if existing is not None:
                return existing
            return await self._create_default(workflow_id, document, author or self.default_author)

    async def resolve_branch(
        self,
        workflow_id: str,
        name: Optional[str] = None,
        author: Optional[str] = None
    ) -> WorkflowBranch:
        """Named branch, or the default branch (started on first use)."""
        if not name or name == self.default_branch_name:
            return await self.ensure_default_branch(workflow_id, author)
        return self.find_branch(workflow_id, name)

    async def create_branch(
        self,
        workflow_id: str,
        name: str,
        base_version_id: Optional[str] = None,
        author: Optional[str] = None,
        description: Optional[str] = None
    ) -> WorkflowBranch:
        """
        Create a branch whose version 1 is the live workflow.

        Args:
            workflow_id: Workflow to branch.
            name: New branch name, unique per workflow.
            base_version_id: Version the branch descends from (defaults to the default branch tip).
            author: Recorded as creator.
            description: Optional free text.

        Returns:
            The new WorkflowBranch.
        """
        if not name:
            raise ValidationError("branch_name is required for create_branch operation")
        author = author or self.default_author
        document = await self.pull(workflow_id)

        async with self.lock(f"workflow:{workflow_id}"):
            if self.repository.find_branch(workflow_id, name) is not None:
                raise ValidationError(f"Branch '{name}' already exists for workflow '{workflow_id}'")

            default = self.get_default_branch(workflow_id)
            if default is None:
                default = await self._create_default(workflow_id, document, author)
                if name == default.name:
                    return default

            if base_version_id:
                base = self.get_version(workflow_id, base_version_id)
            else:
                base = self.tip(default.id)

            now = utc_now()
            branch = WorkflowBranch(
                id=new_id("branch"),
                name=name,
                workflow_id=workflow_id,
                based_on_version_id=base.id,
                created_by=author,
                created_at=now,
                last_modified=now,
                description=description or f"Branch created from {base.name}"
            )
            diff = diff_documents(base.snapshot, document, from_version_id=base.id)
            version = self.new_version(
                branch, base, document,
                change_type=ChangeType.SNAPSHOT,
                tags=["branch-created"],
                author=author,
                description=f"Branch '{name}' created from version {base.version_number}",
                diff=diff
            )
            self.repository.add_branch(branch, version)

        logger.info(f"Created branch '{name}' for workflow {workflow_id} from {base.id}")
        return branch

    async def abandon_branch(self, branch_id: str) -> WorkflowBranch:
        async with self.lock(branch_id):
            branch = self.get_branch(branch_id)
            if branch.is_default:
                raise ValidationError("The default branch cannot be abandoned")
            self.require_active(branch)
            branch = branch.model_copy(update={"status": BranchStatus.ABANDONED, "last_modified": utc_now()})
            self.repository.save_branch(branch)
        logger.info(f"Branch '{branch.name}' of {branch.workflow_id} abandoned")
        return branch

    async def mark_merged(self, branch_id: str, merged_version_id: str) -> WorkflowBranch:
        """Close a branch whose tip `merged_version_id` was merged; newer commits keep it open."""
        async with self.lock(branch_id):
            branch = self.get_branch(branch_id)
            if branch.status != BranchStatus.ACTIVE:
                logger.warning(f"Branch '{branch.name}' is already {branch.status.value}; status left as is")
                return branch
            if self.tip(branch_id).id != merged_version_id:
                logger.warning(
                    f"Branch '{branch.name}' moved past merged version {merged_version_id}; left active"
                )
                return branch
            branch = branch.model_copy(update={"status": BranchStatus.MERGED, "last_modified": utc_now()})
            self.repository.save_branch(branch)
        return branch

    # =========================================================================
    # COMMITS
    # =========================================================================
    async def commit_if_changed(
        self,
        branch_id: str,
        document: Optional[WorkflowDocument] = None,
        author: Optional[str] = None,
        name: Optional[str] = None
    ) -> Optional[WorkflowVersion]:
        """
        Record a new version when the workflow differs from the branch tip.

        Args:
            branch_id: Branch to commit to.
            document: Explicit workflow state; pulled from n8n when omitted.
            author: Recorded author.
            name: Optional version name.

        Returns:
            The new tip, or None when nothing changed.
        """
        branch = self.get_branch(branch_id)
        self.require_active(branch)
        if document is None:
            document = await self.pull(branch.workflow_id)
        else:
            self._check_document(branch.workflow_id, document)

        async with self.lock(branch_id):
            branch = self.get_branch(branch_id)
            self.require_active(branch)
            tip = self.tip(branch_id)
            diff = diff_documents(tip.snapshot, document, from_version_id=tip.id)
            if not diff.summary.has_changes:
                logger.info(f"No changes on '{branch.name}' since v{tip.version_number}")
                return None

            version = self.new_version(
                branch, tip, document,
                change_type=classify_change(diff),
                tags=change_tags(diff),
                author=author,
                name=name,
                description=describe_change(diff),
                diff=diff
            )
            return self.record(branch, version)

    async def create_snapshot(
        self,
        branch_id: str,
        name: Optional[str] = None,
        author: Optional[str] = None,
        document: Optional[WorkflowDocument] = None
    ) -> WorkflowVersion:
        """Record the current workflow as a version even if nothing changed."""
        branch = self.get_branch(branch_id)
        self.require_active(branch)
        if document is None:
            document = await self.pull(branch.workflow_id)
        else:
            self._check_document(branch.workflow_id, document)

        async with self.lock(branch_id):
            branch = self.get_branch(branch_id)
            self.require_active(branch)
            tip = self.tip(branch_id)
            created = utc_now()
            version = self.new_version(
                branch, tip, document,
                change_type=ChangeType.SNAPSHOT,
                tags=["manual-snapshot"],
                author=author,
                name=name,
                description=f"Snapshot created at {created.strftime('%Y-%m-%d %H:%M:%S')} UTC",
                diff=diff_documents(tip.snapshot, document, from_version_id=tip.id)
            )
            return self.record(branch, version)

    async def restore_version(
        self,
        branch_id: str,
        version_id: str,
        author: Optional[str] = None
    ) -> WorkflowVersion:
        """
        Copy an older snapshot forward as the new tip.
        The version may come from any branch of the same workflow.
        """
        if not version_id:
            raise ValidationError("version_id is required for restore_version operation")
        branch = self.get_branch(branch_id)
        self.require_active(branch)
        source = self.get_version(branch.workflow_id, version_id)

        async with self.lock(branch_id):
            branch = self.get_branch(branch_id)
            self.require_active(branch)
            tip = self.tip(branch_id)
            snapshot = source.snapshot.model_copy(deep=True)
            version = self.new_version(
                branch, tip, snapshot,
                change_type=ChangeType.MAJOR,
                tags=["restoration", f"from-v{source.version_number}"],
                author=author,
                name=f"Restored from {source.name}",
                description=f"Restored from version {source.version_number} ({source.id})",
                diff=diff_documents(tip.snapshot, snapshot, tip.id, source.id)
            )
            restored = await self.push_and_record(branch, version)

        logger.info(f"Restored '{branch.name}' to {source.id}")
        return restored

    # =========================================================================
    # HISTORY
    # =========================================================================
    def list_history(
        self,
        workflow_id: str,
        limit: Optional[int] = None,
        branch_id: Optional[str] = None
    ) -> List[WorkflowVersion]:
        """Most recent first by version number; insertion order breaks ties."""
        limit = settings.history_limit if limit is None else limit
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        versions = self.repository.list_versions(workflow_id, branch_id)
        ordered = sorted(
            enumerate(versions),
            key=lambda item: (item[1].version_number, item[0]),
            reverse=True
        )
        return [version for _, version in ordered][:limit]

    def history_statistics(self, workflow_id: str) -> Dict[str, Any]:
        versions = self.repository.list_versions(workflow_id)
        branches = self.repository.list_branches(workflow_id)
        total_changes = sum(
            v.change_summary.added_nodes + v.change_summary.removed_nodes + v.change_summary.modified_nodes
            for v in versions if v.change_summary
        )
        return {
            "total_versions": len(versions),
            "active_branches": sum(1 for b in branches if b.status == BranchStatus.ACTIVE),
            "total_changes": total_changes,
            "average_change_size": round(total_changes / len(versions), 2) if versions else 0,
            "last_change": max(v.created_at for v in versions).isoformat() if versions else "Never"
        }

    def compare_versions(
        self,
        workflow_id: str,
        from_version_id: str,
        to_version_id: str
    ) -> Tuple[WorkflowVersion, WorkflowVersion, WorkflowDiff]:
        if not from_version_id or not to_version_id:
            raise ValidationError("from_version and to_version are required for compare_versions operation")
        older = self.get_version(workflow_id, from_version_id)
        newer = self.get_version(workflow_id, to_version_id)
        diff = diff_documents(older.snapshot, newer.snapshot, older.id, newer.id)
        return older, newer, diff

    # =========================================================================
    # ANCESTRY
    # =========================================================================
    def _ancestor_distances(self, version: WorkflowVersion) -> Dict[str, int]:
        distances = {version.id: 0}
        queue = deque([version])
        while queue:
            current = queue.popleft()
            for parent_id in current.parent_ids():
                if parent_id in distances:
                    continue
                parent = self.repository.get_version(parent_id)
                if parent is None:
                    continue
                distances[parent_id] = distances[current.id] + 1
                queue.append(parent)
        return distances

    def common_ancestor(self, first: WorkflowVersion, second: WorkflowVersion) -> Optional[WorkflowVersion]:
        """Nearest version reachable from both through parent and merge-parent links."""
        left = self._ancestor_distances(first)
        right = self._ancestor_distances(second)
        shared = left.keys() & right.keys()
        if not shared:
            return None
        best = min(shared, key=lambda vid: (left[vid] + right[vid], max(left[vid], right[vid]), vid))
        return self.repository.get_version(best)
