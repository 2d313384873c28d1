"""
Version repositories: both backends honour the same contract.
"""
from datetime import datetime, timezone

import pytest

from workflow_vcs.core.errors import ValidationError
from workflow_vcs.models.schemas import BranchStatus, ChangeType, WorkflowBranch, WorkflowVersion
from workflow_vcs.services.store import InMemoryVersionRepository, SqliteVersionRepository

from tests.factories import WORKFLOW_ID, make_document, make_node

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def branch(branch_id: str, name: str, is_default: bool = False) -> WorkflowBranch:
    return WorkflowBranch(
        id=branch_id,
        name=name,
        workflow_id=WORKFLOW_ID,
        is_default=is_default,
        created_by="tester",
        created_at=NOW,
        last_modified=NOW,
    )


def version(version_id: str, branch_id: str, number: int, parent: str = None) -> WorkflowVersion:
    return WorkflowVersion(
        id=version_id,
        workflow_id=WORKFLOW_ID,
        branch_id=branch_id,
        version_number=number,
        name=f"Version {number}",
        author="tester",
        created_at=NOW,
        change_type=ChangeType.SNAPSHOT,
        snapshot=make_document(nodes=[make_node(f"n{number}")]),
        parent_version_id=parent,
    )


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "sqlite":
        return SqliteVersionRepository(str(tmp_path / "vcs" / "history.db"))
    return InMemoryVersionRepository()


def test_commit_moves_the_tip(repository):
    repository.add_branch(branch("b1", "main", True), version("v1", "b1", 1))
    repository.commit(version("v2", "b1", 2, parent="v1"))

    assert repository.get_tip("b1").id == "v2"
    assert repository.get_version("v1").is_active is False
    assert repository.get_version("v2").is_active is True
    assert [v.id for v in repository.list_versions(WORKFLOW_ID, "b1") if v.is_active] == ["v2"]


def test_branch_bookkeeping_is_saved_with_the_commit(repository):
    repository.add_branch(branch("b1", "main", True), version("v1", "b1", 1))
    updated = branch("b1", "main", True).model_copy(update={"change_count": 3})

    repository.commit(version("v2", "b1", 2, parent="v1"), updated)

    assert repository.get_branch("b1").change_count == 3


def test_duplicate_branch_names_are_rejected(repository):
    repository.add_branch(branch("b1", "main", True), version("v1", "b1", 1))

    with pytest.raises(ValidationError):
        repository.add_branch(branch("b2", "main"), version("v2", "b2", 1))
    assert [b.id for b in repository.list_branches(WORKFLOW_ID)] == ["b1"]


def test_listing_keeps_insertion_order(repository):
    repository.add_branch(branch("b1", "main", True), version("v1", "b1", 1))
    repository.add_branch(branch("b2", "feature"), version("v2", "b2", 1, parent="v1"))
    repository.commit(version("v3", "b1", 2, parent="v1"))

    assert [v.id for v in repository.list_versions(WORKFLOW_ID)] == ["v1", "v2", "v3"]
    assert [b.name for b in repository.list_branches(WORKFLOW_ID)] == ["main", "feature"]
    assert repository.find_branch(WORKFLOW_ID, "feature").id == "b2"
    assert repository.find_branch(WORKFLOW_ID, "missing") is None
    assert repository.list_versions("other-workflow") == []


def test_returned_objects_are_copies(repository):
    repository.add_branch(branch("b1", "main", True), version("v1", "b1", 1))

    tip = repository.get_tip("b1")
    tip.snapshot.nodes.clear()
    stale = repository.get_branch("b1")
    stale.status = BranchStatus.ABANDONED

    assert len(repository.get_tip("b1").snapshot.nodes) == 1
    assert repository.get_branch("b1").status == BranchStatus.ACTIVE


def test_sqlite_history_survives_a_restart(tmp_path):
    path = str(tmp_path / "history.db")
    first = SqliteVersionRepository(path)
    first.add_branch(branch("b1", "main", True), version("v1", "b1", 1))
    first.commit(version("v2", "b1", 2, parent="v1"))

    second = SqliteVersionRepository(path)

    assert second.get_tip("b1").id == "v2"
    assert second.get_version("v2").snapshot.nodes[0].id == "n2"
