"""
Snapshot diff: structure, symmetry, classification and insights.
"""
from workflow_vcs.models.schemas import ChangeType
from workflow_vcs.services.diff import (
    assess_diff,
    change_tags,
    classify_change,
    describe_change,
    diff_documents,
)

from tests.factories import add_nodes, drop_node, edit, edit_node, link, make_document, make_node


def test_identical_documents_have_no_changes(base_document):
    diff = diff_documents(base_document, base_document.model_copy(deep=True))

    assert diff.summary.has_changes is False
    assert diff.summary.change_count == 0
    assert diff.changed_fields() == []
    assert diff.node_changes.touched_ids() == set()
    assert describe_change(diff) == "No changes"


def test_added_and_removed_are_symmetric(base_document):
    changed = add_nodes(drop_node(base_document, "n2"), make_node("n3"), make_node("n4"))

    forward = diff_documents(base_document, changed)
    backward = diff_documents(changed, base_document)

    assert [n.id for n in forward.node_changes.added] == [n.id for n in backward.node_changes.removed]
    assert [n.id for n in forward.node_changes.removed] == [n.id for n in backward.node_changes.added]
    assert [n.id for n in forward.node_changes.added] == ["n3", "n4"]


def test_node_order_does_not_matter(base_document):
    data = base_document.model_dump(mode="json")
    data["nodes"].reverse()
    reordered = type(base_document).model_validate(data)

    assert diff_documents(base_document, reordered).summary.has_changes is False


def test_modified_node_reports_only_changed_fields(base_document):
    changed = edit_node(base_document, "n1", parameters={"path": "contacts"})

    diff = diff_documents(base_document, changed, "v1", "v2")
    [modification] = diff.node_changes.modified

    assert modification.id == "n1"
    assert list(modification.field_changes) == ["parameters"]
    assert modification.field_changes["parameters"].old_value == {"path": "leads"}
    assert modification.field_changes["parameters"].new_value == {"path": "contacts"}
    assert diff.metadata.from_version_id == "v1"
    assert diff.metadata.to_version_id == "v2"


def test_untracked_node_keys_are_ignored(base_document):
    changed = edit_node(base_document, "n2", typeVersion=3, notes="reviewed")

    assert diff_documents(base_document, changed).summary.has_changes is False


def test_integral_floats_equal_their_integers(base_document):
    stored = edit_node(base_document, "n2", parameters={"values": {"number": [1, 2]}, "limit": 10})
    sent = edit_node(base_document, "n2", parameters={"values": {"number": [1.0, 2.0]}, "limit": 10.0})
    halved = edit_node(base_document, "n2", parameters={"values": {"number": [1.5, 2]}, "limit": 10})

    assert diff_documents(stored, sent).summary.has_changes is False
    assert diff_documents(stored, halved).node_changes.modification("n2") is not None


def test_tag_changes_list_added_and_removed(base_document):
    changed = edit(base_document, tags=["b", "c"])

    tags = diff_documents(base_document, changed).field_changes["tags"]

    assert tags.changed is True
    assert tags.added == ["b", "c"]
    assert tags.removed == ["a"]


def test_n8n_tag_objects_are_normalized():
    document = make_document(tags=[{"id": "7", "name": "sales"}, "ops", {"id": "9", "name": "sales"}])

    assert document.tags == ["ops", "sales"]


def test_change_count_counts_categories(base_document):
    changed = edit(
        add_nodes(base_document, make_node("n3", "Email")),
        name="Lead Intake v2",
        active=True,
        connections={**link("Webhook", "Set"), **link("Set", "Email")},
    )

    summary = diff_documents(base_document, changed).summary

    # name, active, nodes, connections
    assert summary.change_count == 4
    assert summary.changed_connections == 1
    assert summary.added_count == 1


def test_classification_rules(base_document):
    removal = diff_documents(base_document, drop_node(base_document, "n2"))
    addition = diff_documents(base_document, add_nodes(base_document, make_node("n3")))
    tweak = diff_documents(base_document, edit_node(base_document, "n2", position=[300, 40]))
    broad = diff_documents(base_document, edit(base_document, name="Renamed", active=True, tags=["z"]))

    assert classify_change(removal) == ChangeType.MAJOR
    assert classify_change(addition) == ChangeType.MINOR
    assert classify_change(tweak) == ChangeType.PATCH
    assert classify_change(broad) == ChangeType.MINOR


def test_change_tags_follow_the_diff(base_document):
    changed = edit(drop_node(base_document, "n2"), active=True, name="Renamed", connections={})

    tags = change_tags(diff_documents(base_document, changed))

    assert tags == ["nodes-removed", "connections-changed", "activation-changed", "renamed"]


def test_assess_diff_scales_with_change_count(base_document):
    small = assess_diff(diff_documents(base_document, edit(base_document, name="x")))
    everything = edit(
        add_nodes(base_document, make_node("n3")),
        name="x", active=True, tags=["q"], settings={"timezone": "UTC"}, connections={},
    )
    large = assess_diff(diff_documents(base_document, everything))

    assert small["risk_level"] == "low"
    assert small["breaking_changes"] == []
    assert large["risk_level"] == "high"
    assert "Connection changes may affect data flow" in large["breaking_changes"]
    assert large["impact_assessment"].startswith("6 changes detected")
