from conftest import complete_content

from app.riskdocs.modules.actions.service import close_action, create_action, document_actions, reinstate_action
from app.riskdocs.modules.change_summaries.service import (
    change_summary_stats,
    compute_delta,
    diff,
    get_change_summary,
    render_summary_text,
)
from app.riskdocs.modules.documents.versioning import create_document, create_next_version


def _refs(entries):
    return [e["reference"] for e in entries]


def test_new_and_closed_actions_between_issues(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    r1 = create_action(s, v1.id, actor=user, title="Fire door", priority_band="P2")
    r2 = create_action(s, v1.id, actor=user, title="Signage")
    close_action(s, r2.id, actor=user)
    first = issue_approved(v1.id)
    assert first.change_summary is None
    assert get_change_summary(s, v1.id) is None

    v2 = create_next_version(s, v1.id, actor=user)
    (r1_v2,) = document_actions(s, v2.id)
    assert r1_v2.reference_number == r1.reference_number
    create_action(s, v2.id, actor=user, title="Alarm panel fault", priority_band="P1")
    close_action(s, r1_v2.id, actor=user)
    summary = issue_approved(v2.id).change_summary

    assert _refs(summary.bucket("new")) == ["R-03"]
    assert _refs(summary.bucket("closed")) == ["R-01"]
    assert summary.bucket("reopened") == []
    assert summary.bucket("outstanding") == []
    assert summary.has_material_changes is True
    assert (summary.version_number, summary.previous_version_number) == (2, 1)
    assert "## New Actions (1)\n- R-03: [P1] Alarm panel fault" in summary.summary_text
    assert "## Closed Actions (1)\n- R-01: [P2] Fire door" in summary.summary_text

    stats = change_summary_stats(summary)
    assert stats["total_changes"] == 2
    assert stats["improvement"] is False and stats["deterioration"] is False


def test_diff_returns_the_stored_summary(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    create_action(s, v1.id, actor=user, title="Fire door")
    issue_approved(v1.id)
    v2 = create_next_version(s, v1.id, actor=user)
    stored = issue_approved(v2.id).change_summary

    again = diff(s, v2, v1)
    assert again.id == stored.id
    assert again.summary_text == stored.summary_text
    assert again.content_sha256 == stored.content_sha256
    assert again.to_dict() == stored.to_dict()
    assert get_change_summary(s, v2.id).id == stored.id

    # carried open action, nothing else changed
    assert _refs(stored.bucket("outstanding")) == ["R-01"]
    assert stored.has_material_changes is False
    assert "_No material changes since last issue._" in stored.summary_text


def test_reinstated_action_is_reported_as_reopened(s, user, issue_approved):
    v1 = create_document(s, title="T", doc_type="FRA", actor=user, content=complete_content("FRA"))
    a = create_action(s, v1.id, actor=user, title="Emergency lighting")
    close_action(s, a.id, actor=user)
    issue_approved(v1.id)
    v2 = create_next_version(s, v1.id, actor=user)
    reinstate_action(s, a.id, v2.id, actor=user, reason="Failed retest")
    summary = issue_approved(v2.id).change_summary

    assert _refs(summary.bucket("reopened")) == ["R-01"]
    assert summary.bucket("new") == []
    assert summary.bucket("closed") == []
    assert summary.has_material_changes is True


def test_compute_delta_buckets():
    previous = [
        {"reference_number": 1, "status": "open", "first_raised_in_version": 1, "title": "a"},
        {"reference_number": 2, "status": "open", "first_raised_in_version": 1, "title": "b"},
        {"reference_number": 3, "status": "closed", "first_raised_in_version": 1, "title": "c"},
    ]
    new = [
        {"reference_number": 1, "status": "in_progress", "first_raised_in_version": 1, "title": "a"},
        {"reference_number": 2, "status": "not_applicable", "first_raised_in_version": 1, "title": "b"},
        {"reference_number": 3, "status": "open", "first_raised_in_version": 1, "title": "c"},
        {"reference_number": 4, "status": "open", "first_raised_in_version": 2, "title": "d"},
    ]
    delta = compute_delta(new, previous, 2)
    assert [e["reference"] for e in delta.new] == ["R-04"]
    assert [e["reference"] for e in delta.closed] == ["R-02"]
    assert delta.closed[0]["status"] == "not_applicable"
    assert [e["reference"] for e in delta.reopened] == ["R-03"]
    assert [e["reference"] for e in delta.outstanding] == ["R-01"]
    assert delta.counts() == {"new": 1, "closed": 1, "reopened": 1, "outstanding": 1}

    # an action dropped from the new version entirely counts as closed
    assert [e["reference"] for e in compute_delta([], previous, 2).closed] == ["R-01", "R-02"]


def test_render_summary_text_without_changes():
    delta = compute_delta([], [], 2)
    assert render_summary_text(delta) == "# Changes Since Last Issue\n\n_No material changes since last issue._\n"
