from datetime import date

import pytest

from conftest import complete_content

from app.riskdocs.modules.actions.service import (
    close_action,
    create_action,
    document_actions,
    lineage_actions,
    open_actions,
    reinstate_action,
    reopen_action,
    supersede,
    update_action_status,
)
from app.riskdocs.modules.documents.errors import (
    AlreadySuperseded,
    DocumentImmutable,
    InvalidTransition,
    ValidationFailed,
)
from app.riskdocs.modules.documents.versioning import create_document, create_next_version


@pytest.fixture()
def draft(s, user):
    return create_document(s, title="Warehouse FRA", doc_type="FRA", actor=user, content=complete_content("FRA"))


def test_reference_numbers_are_sequential_and_never_reused(s, user, draft, issue_approved):
    a1 = create_action(s, draft.id, actor=user, title="Replace fire door closer", priority_band="p2")
    a2 = create_action(s, draft.id, actor=user, title="Service extinguishers")
    assert (a1.reference, a2.reference) == ("R-01", "R-02")
    assert a1.priority_band == "P2"

    close_action(s, a2.id, actor=user)
    issue_approved(draft.id)
    v2 = create_next_version(s, draft.id, actor=user)
    a3 = create_action(s, v2.id, actor=user, title="Clear escape route")

    # R-02 was closed and left behind; its number is still not reused
    assert a3.reference_number == 3
    assert [a.reference for a in document_actions(s, v2.id)] == ["R-01", "R-03"]
    assert draft.lineage.next_reference_number == 4


def test_create_action_validates_input(s, user, draft):
    with pytest.raises(ValidationFailed):
        create_action(s, draft.id, actor=user, title="   ")
    with pytest.raises(ValidationFailed):
        create_action(s, draft.id, actor=user, title="X", priority_band="P9")
    assert document_actions(s, draft.id) == []


def test_carry_forward_keeps_open_statuses_and_history(s, user, draft, issue_approved):
    open_a = create_action(
        s, draft.id, actor=user, title="Open", section_key="fire_protection", target_date=date(2026, 1, 31)
    )
    closed_a = create_action(s, draft.id, actor=user, title="Closed")
    progress_a = create_action(s, draft.id, actor=user, title="In progress")
    deferred_a = create_action(s, draft.id, actor=user, title="Deferred")
    na_a = create_action(s, draft.id, actor=user, title="Not applicable")
    close_action(s, closed_a.id, actor=user, note="Done on site")
    update_action_status(s, progress_a.id, "in_progress", actor=user)
    update_action_status(s, deferred_a.id, "deferred", actor=user)
    update_action_status(s, na_a.id, "not_applicable", actor=user)

    issue_approved(draft.id)
    v2 = create_next_version(s, draft.id, actor=user)
    carried = document_actions(s, v2.id)

    assert [(a.reference_number, a.status) for a in carried] == [
        (open_a.reference_number, "open"),
        (progress_a.reference_number, "in_progress"),
        (deferred_a.reference_number, "deferred"),
    ]
    for clone, src in zip(carried, (open_a, progress_a, deferred_a)):
        assert clone.id != src.id
        assert clone.origin_action_id == src.id
        assert clone.carried_from_document_id == draft.id
        assert clone.first_raised_in_version == 1
    assert carried[0].section_key == "fire_protection"
    assert carried[0].target_date == date(2026, 1, 31)
    # history on v1 is untouched
    assert [a.status for a in document_actions(s, draft.id)] == [
        "open",
        "closed",
        "in_progress",
        "deferred",
        "not_applicable",
    ]


def test_carry_forward_through_two_revisions_keeps_the_chain_origin(s, user, draft, issue_approved):
    a = create_action(s, draft.id, actor=user, title="Long running")
    issue_approved(draft.id)
    v2 = create_next_version(s, draft.id, actor=user)
    issue_approved(v2.id)
    v3 = create_next_version(s, v2.id, actor=user)

    (v3_copy,) = document_actions(s, v3.id)
    assert v3_copy.origin_action_id == a.id
    assert v3_copy.chain_id == a.id
    assert v3_copy.carried_from_document_id == v2.id
    assert [x.document_id for x in lineage_actions(s, draft.lineage_id)] == [draft.id, v2.id, v3.id]


def test_supersede_is_idempotent_for_same_replacement(s, user, draft):
    old = create_action(s, draft.id, actor=user, title="Old wording")
    new = create_action(s, draft.id, actor=user, title="New wording")
    other = create_action(s, draft.id, actor=user, title="Other")

    supersede(s, old.id, new.id, actor=user)
    assert old.status == "superseded"
    assert old.superseded_by_action_id == new.id
    stamped = old.superseded_at

    again = supersede(s, old.id, new.id, actor=user)
    assert again.superseded_at == stamped

    with pytest.raises(AlreadySuperseded):
        supersede(s, old.id, other.id, actor=user)
    with pytest.raises(ValidationFailed):
        supersede(s, new.id, new.id, actor=user)
    assert [a.id for a in open_actions(s, draft.id)] == [new.id, other.id]


def test_close_is_idempotent_and_reopen_needs_reason(s, user, draft):
    a = create_action(s, draft.id, actor=user, title="Fix")
    close_action(s, a.id, actor=user, note="Fixed")
    closed_at = a.closed_at
    assert close_action(s, a.id, actor=user).closed_at == closed_at

    with pytest.raises(ValidationFailed):
        reopen_action(s, a.id, actor=user, reason="")
    reopen_action(s, a.id, actor=user, reason="Recurred at re-inspection")
    assert a.status == "open"
    assert a.closed_at is None
    assert a.reopen_note == "Recurred at re-inspection"

    with pytest.raises(InvalidTransition):
        reopen_action(s, a.id, actor=user, reason="again")


def test_update_action_status_rejects_unknown_and_superseded(s, user, draft):
    a = create_action(s, draft.id, actor=user, title="Fix")
    with pytest.raises(ValidationFailed):
        update_action_status(s, a.id, "done", actor=user)
    with pytest.raises(ValidationFailed):
        update_action_status(s, a.id, "superseded", actor=user)
    assert update_action_status(s, a.id, "closed", actor=user, note="ok").status == "closed"


def test_actions_on_issued_version_are_frozen(s, user, draft, issue_approved):
    a = create_action(s, draft.id, actor=user, title="Fix")
    issue_approved(draft.id)
    with pytest.raises(DocumentImmutable):
        close_action(s, a.id, actor=user)
    with pytest.raises(DocumentImmutable):
        update_action_status(s, a.id, "deferred", actor=user)
    assert a.status == "open"


def test_reinstate_brings_closed_action_back_with_same_reference(s, user, draft, issue_approved):
    a = create_action(s, draft.id, actor=user, title="Emergency lighting test")
    close_action(s, a.id, actor=user)
    issue_approved(draft.id)
    v2 = create_next_version(s, draft.id, actor=user)
    assert document_actions(s, v2.id) == []

    back = reinstate_action(s, a.id, v2.id, actor=user, reason="Failed again")
    assert back.document_id == v2.id
    assert back.reference_number == a.reference_number
    assert back.first_raised_in_version == 1
    assert back.status == "open"
    assert back.origin_action_id == a.id
    assert a.status == "closed"

    with pytest.raises(ValidationFailed):
        reinstate_action(s, a.id, v2.id, actor=user, reason="twice")
    with pytest.raises(ValidationFailed):
        reinstate_action(s, a.id, v2.id, actor=user, reason="")
