"""
Three-way merge: conflict detection, automatic resolution and caller resolutions.
"""
import pytest

from workflow_vcs.core.errors import ValidationError
from workflow_vcs.models.schemas import (
    ConflictResolution,
    ConflictType,
    ResolutionStrategy,
    Severity,
)
from workflow_vcs.services.merge import (
    CONNECTION_CONFLICT_ID,
    detect_conflicts,
    merge_documents,
    metadata_conflict_id,
    node_conflict_id,
    parse_resolutions,
    preview_merge,
    split_resolutions,
)

from tests.factories import add_nodes, drop_node, edit, edit_node, link, make_document, make_node


@pytest.fixture
def single():
    return make_document(nodes=[make_node("a", "A", "n8n-nodes-base.httpRequest")], tags=["a"])


def test_merging_a_branch_with_itself_is_conflict_free(base_document):
    side = edit_node(base_document, "n2", parameters={"keep": True})

    preview = preview_merge(base_document, side, side.model_copy(deep=True))

    assert preview.conflicts == []
    assert preview.can_auto_merge is True
    assert preview.risk_assessment.risk_level == Severity.LOW
    assert preview.estimated_merge_time == "1-5 minutes"


def test_identical_changes_converge(base_document):
    source = edit(drop_node(base_document, "n2"), tags=["a", "b"], connections={})
    target = source.model_copy(deep=True)

    result = merge_documents(base_document, source, target)

    assert result.success is True
    assert result.conflicts == []
    assert [n.id for n in result.merged_document.nodes] == ["n1"]


def test_clean_merge_keeps_both_additions(single):
    source = add_nodes(single, make_node("b", "B"))
    target = add_nodes(single, make_node("c", "C"))

    preview = preview_merge(single, source, target)
    result = merge_documents(single, source, target)

    assert preview.can_auto_merge is True
    assert preview.summary.added_nodes == 2
    assert preview.summary.total_conflicts == 0
    assert [n.id for n in result.merged_document.nodes] == ["a", "c", "b"]


def test_type_change_on_both_sides_is_a_critical_conflict(single):
    source = edit_node(single, "a", type="n8n-nodes-base.webhook")
    target = edit_node(single, "a", type="n8n-nodes-base.cron")

    preview = preview_merge(single, source, target)
    [conflict] = preview.conflicts

    assert conflict.id == node_conflict_id("a")
    assert conflict.type == ConflictType.NODE
    assert conflict.severity == Severity.CRITICAL
    assert conflict.auto_resolvable is False
    assert conflict.suggested_resolution == ResolutionStrategy.MANUAL
    assert preview.can_auto_merge is False
    assert preview.risk_assessment.risk_level == Severity.CRITICAL
    assert preview.estimated_merge_time == "10-30 minutes"


def test_unresolved_conflict_blocks_the_merge(single):
    source = edit_node(single, "a", type="n8n-nodes-base.webhook")
    target = edit_node(single, "a", type="n8n-nodes-base.cron")

    result = merge_documents(single, source, target)

    assert result.success is False
    assert result.merged_document is None
    assert [c.id for c in result.conflicts] == [node_conflict_id("a")]


def test_tags_changed_on_both_sides_are_unioned(single):
    source = edit(single, tags=["a", "b"])
    target = edit(single, tags=["a", "c"])

    preview = preview_merge(single, source, target)
    result = merge_documents(single, source, target)

    [conflict] = preview.conflicts
    assert conflict.id == metadata_conflict_id("tags")
    assert conflict.auto_resolvable is True
    assert preview.can_auto_merge is True
    assert result.success is True
    assert result.merged_document.tags == ["a", "b", "c"]
    assert result.auto_resolved == 1


def test_position_only_edits_keep_the_target_layout(single):
    source = edit_node(single, "a", position=[10, 10])
    target = edit_node(single, "a", position=[50, 90])

    result = merge_documents(single, source, target)

    assert result.success is True
    assert result.merged_document.nodes[0].position == [50, 90]
    assert result.applied_resolutions == {node_conflict_id("a"): ResolutionStrategy.KEEP_TARGET}


def test_disjoint_field_edits_suggest_merge(single):
    source = edit_node(single, "a", parameters={"url": "https://api.example.com"})
    target = edit_node(single, "a", name="Fetch Leads")

    [conflict] = detect_conflicts(single, source, target)
    assert conflict.severity == Severity.MEDIUM
    assert conflict.suggested_resolution == ResolutionStrategy.MERGE
    assert conflict.auto_resolvable is False

    result = merge_documents(single, source, target, {conflict.id: ConflictResolution(strategy="merge")})
    [node] = result.merged_document.nodes
    assert node.name == "Fetch Leads"
    assert node.parameters == {"url": "https://api.example.com"}


def test_delete_against_edit_is_high_severity(base_document):
    source = edit(drop_node(base_document, "n2"), connections={})
    target = edit_node(base_document, "n2", parameters={"values": {"number": [1]}})

    [conflict] = [c for c in detect_conflicts(base_document, source, target) if c.type == ConflictType.NODE]
    assert conflict.severity == Severity.HIGH
    assert conflict.source_value is None

    resolutions = parse_resolutions({conflict.id: "keep_source"})
    result = merge_documents(base_document, source, target, resolutions)
    assert [n.id for n in result.merged_document.nodes] == ["n1"]


def test_activation_on_both_sides_converges(single):
    source = edit(single, active=True)
    target = edit(single, active=True, name="Renamed")

    result = merge_documents(single, source, target)

    assert detect_conflicts(single, source, target) == []
    assert result.merged_document.active is True
    assert result.merged_document.name == "Renamed"


def test_connection_conflict_needs_a_manual_value(base_document):
    extra = add_nodes(base_document, make_node("n3", "Email"))
    source = edit(extra, connections={**link("Webhook", "Set"), **link("Set", "Email")})
    target = edit(extra, connections=link("Webhook", "Email"))

    preview = preview_merge(extra, source, target)
    [conflict] = preview.conflicts
    assert conflict.id == CONNECTION_CONFLICT_ID
    assert conflict.severity == Severity.HIGH
    assert "Test workflow execution after merge" in preview.risk_assessment.recommendations

    chosen = link("Webhook", "Email")
    result = merge_documents(
        extra, source, target,
        parse_resolutions({CONNECTION_CONFLICT_ID: {"strategy": "manual", "value": chosen}}),
    )
    assert result.merged_document.connections == chosen


def test_merge_strategy_is_rejected_for_connections(base_document):
    source = edit(base_document, connections={})
    target = edit(base_document, connections=link("Set", "Webhook"))

    with pytest.raises(ValidationError):
        merge_documents(base_document, source, target, parse_resolutions({CONNECTION_CONFLICT_ID: "merge"}))


def test_manual_resolution_requires_a_value():
    with pytest.raises(ValidationError):
        parse_resolutions({"metadata_conflict_name": "manual"})


def test_manual_node_value_must_keep_its_id(single):
    source = edit_node(single, "a", type="n8n-nodes-base.webhook")
    target = edit_node(single, "a", type="n8n-nodes-base.cron")
    replacement = make_node("other", "A", "n8n-nodes-base.cron")

    with pytest.raises(ValidationError):
        merge_documents(
            single, source, target,
            parse_resolutions({node_conflict_id("a"): {"strategy": "manual", "value": replacement}}),
        )


def test_unknown_resolutions_are_reported_not_applied(single):
    source = add_nodes(single, make_node("b"))

    result = merge_documents(single, source, single, parse_resolutions({"node_conflict_zzz": "keep_source"}))

    assert result.success is True
    assert result.ignored_resolutions == ["node_conflict_zzz"]


def test_settings_merge_is_key_wise(single):
    base = edit(single, settings={"timezone": "UTC", "saveManualExecutions": True})
    source = edit(base, settings={"timezone": "Europe/Paris", "saveManualExecutions": True})
    target = edit(base, settings={"timezone": "UTC", "saveManualExecutions": False, "callerPolicy": "any"})

    [conflict] = detect_conflicts(base, source, target)
    assert conflict.suggested_resolution == ResolutionStrategy.MANUAL

    result = merge_documents(base, source, target, parse_resolutions({conflict.id: "merge"}))
    assert result.merged_document.settings == {
        "timezone": "Europe/Paris",
        "saveManualExecutions": False,
        "callerPolicy": "any",
    }


def test_one_sided_changes_apply_directly(base_document):
    source = edit(edit_node(base_document, "n1", parameters={"path": "new"}), name="From Source")
    target = edit(base_document, settings={"timezone": "UTC"})

    result = merge_documents(base_document, source, target)

    assert result.success is True
    assert result.merged_document.name == "From Source"
    assert result.merged_document.settings == {"timezone": "UTC"}
    assert result.merged_document.node_map()["n1"].parameters == {"path": "new"}


def test_split_resolutions_reports_leftovers(single):
    source = edit(edit_node(single, "a", type="n8n-nodes-base.webhook"), name="S")
    target = edit(edit_node(single, "a", type="n8n-nodes-base.cron"), name="T")
    conflicts = detect_conflicts(single, source, target)

    remaining, unknown = split_resolutions(
        conflicts, parse_resolutions({node_conflict_id("a"): "keep_target", "nope": "keep_source"})
    )

    assert [c.id for c in remaining] == [metadata_conflict_id("name")]
    assert unknown == ["nope"]


def test_edge_to_a_node_deleted_on_the_other_side_conflicts():
    base = make_document(nodes=[make_node("a", "A"), make_node("b", "B")])
    source = drop_node(base, "b")
    target = edit(base, connections=link("A", "B"))

    preview = preview_merge(base, source, target)
    [conflict] = preview.conflicts
    assert conflict.id == CONNECTION_CONFLICT_ID
    assert "B" in conflict.description
    assert preview.can_auto_merge is False

    blocked = merge_documents(base, source, target)
    assert blocked.success is False

    with pytest.raises(ValidationError):
        merge_documents(base, source, target, parse_resolutions({CONNECTION_CONFLICT_ID: "keep_target"}))

    result = merge_documents(base, source, target, parse_resolutions({CONNECTION_CONFLICT_ID: "keep_source"}))
    assert [n.id for n in result.merged_document.nodes] == ["a"]
    assert result.merged_document.connections == {}


def test_edge_to_a_node_kept_by_the_other_side_is_clean():
    base = make_document(nodes=[make_node("a", "A"), make_node("b", "B")])
    source = edit_node(base, "b", parameters={"x": 1})
    target = edit(base, connections=link("A", "B"))

    result = merge_documents(base, source, target)

    assert result.success is True
    assert result.merged_document.connections == link("A", "B")


def test_manual_connections_must_reference_merged_nodes(base_document):
    source = edit(base_document, connections={})
    target = edit(base_document, connections=link("Set", "Webhook"))

    with pytest.raises(ValidationError):
        merge_documents(
            base_document, source, target,
            parse_resolutions({CONNECTION_CONFLICT_ID: {"strategy": "manual", "value": link("Webhook", "Ghost")}}),
        )
