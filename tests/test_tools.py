"""
Tool surface: JSON payloads, error envelopes and the dispatcher.
"""
import json

import pytest

from workflow_vcs.core import dispatcher
from workflow_vcs.services import branching, tracking

from tests.factories import WORKFLOW_ID, add_nodes, edit_node, make_node


async def call(tool, *args, **kwargs):
    return json.loads(await tool(*args, **kwargs))


@pytest.mark.asyncio
async def test_track_changes_records_new_versions(engine, base_document):
    first = await call(tracking.track_changes, WORKFLOW_ID)
    engine.load(add_nodes(base_document, make_node("n3")))
    second = await call(tracking.track_changes, WORKFLOW_ID, author="dana")

    assert first["success"] is True
    assert first["changes_detected"] is False
    assert first["version"]["version_number"] == 1
    assert second["changes_detected"] is True
    assert second["version"]["version_number"] == 2
    assert second["version"]["change_type"] == "minor"
    assert second["version"]["node_count"] == 3
    assert "snapshot" not in second["version"]


@pytest.mark.asyncio
async def test_track_changes_accepts_a_json_document(base_document):
    document = add_nodes(base_document, make_node("n9")).model_dump_json()

    payload = await call(tracking.track_changes, WORKFLOW_ID, document=document)

    assert payload["changes_detected"] is True


@pytest.mark.asyncio
async def test_history_compare_and_restore(engine, base_document):
    await call(tracking.track_changes, WORKFLOW_ID)
    engine.load(edit_node(base_document, "n1", parameters={"path": "v2"}))
    await call(tracking.track_changes, WORKFLOW_ID)

    history = await call(tracking.get_version_history, WORKFLOW_ID, include_details=True)
    newest, oldest = history["versions"]
    comparison = await call(tracking.compare_versions, WORKFLOW_ID, oldest["id"], newest["id"])
    restored = await call(tracking.restore_version, WORKFLOW_ID, oldest["id"])

    assert history["statistics"]["total_versions"] == 2
    assert "snapshot" in newest
    assert comparison["comparison"]["summary"]["modified_count"] == 1
    assert comparison["insights"]["risk_level"] == "low"
    assert restored["version"]["tags"] == ["restoration", "from-v1"]
    assert restored["pushed_to_engine"] is True
    assert engine.documents[WORKFLOW_ID].node_map()["n1"].parameters == {"path": "leads"}


@pytest.mark.asyncio
async def test_snapshot_tool():
    payload = await call(tracking.create_snapshot, WORKFLOW_ID, snapshot_name="Release 1")

    assert payload["branch"] == "main"
    assert payload["version"]["name"] == "Release 1"
    assert payload["version"]["tags"] == ["manual-snapshot"]


@pytest.mark.asyncio
async def test_errors_are_structured():
    missing = await call(tracking.get_version_history, "no-such-workflow")
    invalid = await call(tracking.get_version_history, WORKFLOW_ID, limit=0)
    absent = await call(tracking.compare_versions, WORKFLOW_ID, "", "v2")

    assert missing["success"] is False
    assert missing["error_type"] == "not_found"
    assert missing["code"] == 404
    assert invalid["error_type"] == "validation_error"
    assert absent["code"] == 400
    assert "from_version" in absent["message"]


@pytest.mark.asyncio
async def test_engine_outage_is_retryable(engine):
    engine.available = False

    payload = await call(branching.create_branch, WORKFLOW_ID, "feature")

    assert payload["error_type"] == "engine_unavailable"
    assert payload["retryable"] is True


@pytest.mark.asyncio
async def test_blocked_merge_returns_conflicts(base_document):
    await call(branching.create_branch, WORKFLOW_ID, "feature")
    feature_doc = edit_node(base_document, "n2", type="n8n-nodes-base.httpRequest")
    await call(tracking.track_changes, WORKFLOW_ID, branch="feature", document=feature_doc.model_dump())
    await call(
        tracking.track_changes, WORKFLOW_ID,
        document=edit_node(base_document, "n2", type="n8n-nodes-base.cron").model_dump(),
    )

    preview = await call(branching.preview_merge, WORKFLOW_ID, "feature")
    blocked = await call(branching.merge_branches, WORKFLOW_ID, "feature")
    resolved = await call(
        branching.merge_branches, WORKFLOW_ID, "feature",
        conflict_resolutions='{"node_conflict_n2": "keep_target"}',
    )

    assert preview["preview"]["can_auto_merge"] is False
    assert blocked["success"] is False
    assert blocked["status"] == "blocked"
    assert [c["id"] for c in blocked["conflicts"]] == ["node_conflict_n2"]
    assert blocked["version"] is None
    assert resolved["success"] is True
    assert resolved["applied_resolutions"] == {"node_conflict_n2": "keep_target"}
    assert resolved["source_branch"]["status"] == "merged"


@pytest.mark.asyncio
async def test_resolve_conflicts_and_abandon_tools(base_document):
    await call(branching.create_branch, WORKFLOW_ID, "feature")
    await call(tracking.track_changes, WORKFLOW_ID, branch="feature",
               document=edit_node(base_document, "n1", parameters={"path": "hook"}).model_dump())
    await call(tracking.track_changes, WORKFLOW_ID,
               document=edit_node(base_document, "n1", parameters={"path": "inbound"}).model_dump())

    bad = await call(branching.resolve_conflicts, WORKFLOW_ID, "feature", {"ghost": "keep_source"})
    staged = await call(branching.resolve_conflicts, WORKFLOW_ID, "feature", {"node_conflict_n1": "keep_source"})
    abandoned = await call(branching.abandon_branch, WORKFLOW_ID, "feature")
    listed = await call(branching.list_branches, WORKFLOW_ID)

    assert bad["error_type"] == "validation_error"
    assert staged["ready_to_merge"] is True
    assert staged["staged_resolutions"]["node_conflict_n1"]["strategy"] == "keep_source"
    assert abandoned["branch"]["status"] == "abandoned"
    assert listed["statistics"]["abandoned_branches"] == 1


@pytest.mark.asyncio
async def test_dispatch_routes_and_validates():
    created = json.loads(await dispatcher.dispatch("create_branch", {"workflow_id": WORKFLOW_ID, "branch_name": "f"}))
    unknown = json.loads(await dispatcher.dispatch("rebase", {}))
    missing = json.loads(await dispatcher.dispatch("create_branch", {"workflow_id": WORKFLOW_ID}))
    extra = json.loads(await dispatcher.dispatch("list_branches", {"workflow_id": WORKFLOW_ID, "x": 1}))

    assert created["success"] is True
    assert unknown["error_type"] == "not_found"
    assert "create_branch" in unknown["available_operations"]
    assert "branch_name" in missing["message"]
    assert "x" in extra["message"]


@pytest.mark.asyncio
async def test_umbrella_tools():
    snapshot = await call(dispatcher.track_workflow_changes, WORKFLOW_ID, "create_snapshot", snapshot_name="s1")
    branch = await call(dispatcher.merge_workflow_changes, WORKFLOW_ID, "create_branch", branch_name="feature")
    listed = await call(dispatcher.merge_workflow_changes, WORKFLOW_ID, "list_branches")
    history = await call(dispatcher.track_workflow_changes, WORKFLOW_ID, "get_version_history", limit=1)
    unknown = await call(dispatcher.track_workflow_changes, WORKFLOW_ID, "rewind")

    assert snapshot["version"]["name"] == "s1"
    assert branch["branch"]["name"] == "feature"
    assert [b["name"] for b in listed["branches"]] == ["main", "feature"]
    assert len(history["versions"]) == 1
    assert unknown["error_type"] == "validation_error"


def test_manifest_lists_every_operation():
    manifest = dispatcher.get_skill_manifest()
    names = {op["name"] for op in manifest["operations"]}

    assert manifest["total"] == 11
    assert names == set(dispatcher.REGISTRY)
    create = next(op for op in manifest["operations"] if op["name"] == "create_branch")
    assert create["parameters"]["branch_name"]["required"] is True
    assert create["parameters"]["base_version"]["required"] is False
