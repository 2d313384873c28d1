"""
Data Contracts - Pydantic Models
Workflow documents, versions, branches, diffs and merge results.
"""
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Fields compared during diff. Anything else on a node is carried along untouched.
NODE_FIELDS = ("name", "type", "position", "parameters", "credentials")
METADATA_FIELDS = ("name", "active", "tags", "settings")


class ChangeType(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    SNAPSHOT = "snapshot"


class BranchStatus(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"
    ABANDONED = "abandoned"


class ConflictType(str, Enum):
    NODE = "node_conflict"
    CONNECTION = "connection_conflict"
    METADATA = "metadata_conflict"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionStrategy(str, Enum):
    KEEP_SOURCE = "keep_source"
    KEEP_TARGET = "keep_target"
    MERGE = "merge"
    MANUAL = "manual"


# =============================================================================
# DOCUMENT MODEL
# =============================================================================
class WorkflowNode(BaseModel):
    """A single node in an n8n workflow. Unknown n8n keys (typeVersion, notes...) are kept."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    type: str
    position: List[float] = Field(default_factory=lambda: [0, 0])
    parameters: Dict[str, Any] = Field(default_factory=dict)
    credentials: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("position")
    @classmethod
    def _check_position(cls, value: List[float]) -> List[float]:
        if len(value) != 2:
            raise ValueError("position must be an [x, y] pair")
        return value

    @field_validator("parameters", "credentials", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def tracked_fields(self) -> Dict[str, Any]:
        """JSON view of the fields that participate in diff and merge."""
        data = self.model_dump(mode="json")
        return {field: data[field] for field in NODE_FIELDS}


class WorkflowDocument(BaseModel):
    """Full workflow state: metadata, nodes and connections."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    active: bool = False
    tags: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> List[str]:
        # n8n returns tags as [{"id": ..., "name": ...}]; we track them as a set of names
        if value is None:
            return []
        names = []
        for tag in value:
            if isinstance(tag, dict):
                tag = tag.get("name")
            if tag:
                names.append(str(tag))
        return sorted(set(names))

    @field_validator("settings", "connections", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @model_validator(mode="after")
    def _unique_node_ids(self) -> "WorkflowDocument":
        seen: Set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id '{node.id}'")
            seen.add(node.id)
        return self

    def node_map(self) -> Dict[str, WorkflowNode]:
        return {node.id: node for node in self.nodes}

    def connection_count(self) -> int:
        return sum(
            len(group) if isinstance(group, list) else 1
            for ports in self.connections.values() if isinstance(ports, dict)
            for outputs in ports.values() if isinstance(outputs, list)
            for group in outputs
        )


# =============================================================================
# HISTORY MODEL
# =============================================================================
class ChangeSummary(BaseModel):
    summary: str
    added_nodes: int = 0
    removed_nodes: int = 0
    modified_nodes: int = 0
    changed_connections: int = 0


class WorkflowVersion(BaseModel):
    """Immutable snapshot record. Only is_active moves when the branch tip moves."""
    id: str
    workflow_id: str
    branch_id: str
    version_number: int
    name: str
    description: Optional[str] = None
    author: str
    created_at: datetime
    change_type: ChangeType
    tags: List[str] = Field(default_factory=list)
    is_active: bool = False
    snapshot: WorkflowDocument
    change_summary: Optional[ChangeSummary] = None
    parent_version_id: Optional[str] = None
    merge_parent_id: Optional[str] = None

    def parent_ids(self) -> List[str]:
        return [p for p in (self.parent_version_id, self.merge_parent_id) if p]

    def to_summary(self) -> Dict[str, Any]:
        """Listing view without the full snapshot."""
        data = self.model_dump(mode="json", exclude={"snapshot"})
        data["node_count"] = len(self.snapshot.nodes)
        data["connection_count"] = self.snapshot.connection_count()
        return data


class WorkflowBranch(BaseModel):
    id: str
    name: str
    workflow_id: str
    based_on_version_id: Optional[str] = None
    is_default: bool = False
    status: BranchStatus = BranchStatus.ACTIVE
    created_by: str
    created_at: datetime
    last_modified: datetime
    description: Optional[str] = None
    change_count: int = 0


# =============================================================================
# DIFF MODEL
# =============================================================================
class FieldChange(BaseModel):
    changed: bool
    old_value: Any = None
    new_value: Any = None
    added: Optional[List[str]] = None
    removed: Optional[List[str]] = None


class NodeModification(BaseModel):
    id: str
    name: str
    field_changes: Dict[str, FieldChange]


class NodeChanges(BaseModel):
    added: List[WorkflowNode] = Field(default_factory=list)
    removed: List[WorkflowNode] = Field(default_factory=list)
    modified: List[NodeModification] = Field(default_factory=list)

    def touched_ids(self) -> Set[str]:
        return (
            {node.id for node in self.added}
            | {node.id for node in self.removed}
            | {mod.id for mod in self.modified}
        )

    def modification(self, node_id: str) -> Optional[NodeModification]:
        for mod in self.modified:
            if mod.id == node_id:
                return mod
        return None


class DiffMetadata(BaseModel):
    from_version_id: Optional[str] = None
    to_version_id: Optional[str] = None


class DiffSummary(BaseModel):
    has_changes: bool = False
    added_count: int = 0
    removed_count: int = 0
    modified_count: int = 0
    changed_connections: int = 0
    change_count: int = 0


class WorkflowDiff(BaseModel):
    metadata: DiffMetadata = Field(default_factory=DiffMetadata)
    field_changes: Dict[str, FieldChange] = Field(default_factory=dict)
    node_changes: NodeChanges = Field(default_factory=NodeChanges)
    connections_changed: bool = False
    summary: DiffSummary = Field(default_factory=DiffSummary)

    def changed_fields(self) -> List[str]:
        return [name for name, change in self.field_changes.items() if change.changed]


# =============================================================================
# MERGE MODEL
# =============================================================================
class MergeConflict(BaseModel):
    id: str
    type: ConflictType
    field: str
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    source_value: Any = None
    target_value: Any = None
    base_value: Any = None
    severity: Severity
    auto_resolvable: bool = False
    suggested_resolution: ResolutionStrategy = ResolutionStrategy.MANUAL
    description: str = ""


class ConflictResolution(BaseModel):
    """How to settle one conflict. A bare strategy string is accepted as shorthand."""
    strategy: ResolutionStrategy
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def _from_shorthand(cls, data: Any) -> Any:
        if isinstance(data, (str, ResolutionStrategy)):
            return {"strategy": data}
        return data

    @model_validator(mode="after")
    def _manual_needs_value(self) -> "ConflictResolution":
        if self.strategy == ResolutionStrategy.MANUAL and self.value is None:
            raise ValueError("manual resolution requires an explicit 'value'")
        return self


class MergeSummary(BaseModel):
    total_conflicts: int = 0
    auto_resolvable_conflicts: int = 0
    manual_conflicts: int = 0
    added_nodes: int = 0
    removed_nodes: int = 0
    modified_nodes: int = 0
    changed_connections: int = 0
    changed_entities: int = 0


class RiskAssessment(BaseModel):
    risk_level: Severity = Severity.LOW
    risk_factors: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class MergePreview(BaseModel):
    can_auto_merge: bool
    conflicts: List[MergeConflict] = Field(default_factory=list)
    summary: MergeSummary = Field(default_factory=MergeSummary)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    estimated_merge_time: str = "1-5 minutes"
    base_version_id: Optional[str] = None
    source_version_id: Optional[str] = None
    target_version_id: Optional[str] = None


class MergeResult(BaseModel):
    success: bool
    merged_document: Optional[WorkflowDocument] = None
    conflicts: List[MergeConflict] = Field(default_factory=list)
    applied_resolutions: Dict[str, ResolutionStrategy] = Field(default_factory=dict)
    auto_resolved: int = 0
    ignored_resolutions: List[str] = Field(default_factory=list)
    message: str = ""
