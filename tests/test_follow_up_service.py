"""Tests for the resolution tracker: identifiers, status side effects and as-of views."""

from datetime import date, timedelta

import pytest

from app.core.exceptions import ConflictExhaustedError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.follow_up import FollowUp
from app.models.workspace import Workspace
from app.services import follow_up_service as svc

USER_A = "user-alice"


def _make(workspace, title="Investigate dip", **data):
    follow_up = svc.create_follow_up(workspace.id, {"title": title, **data}, USER_A)
    _db.session.commit()
    return follow_up


# ── Creation & identifiers ──────────────────────────────────────────────


class TestCreate:

    def test_defaults(self, workspace):
        fu = _make(workspace)
        assert fu.identifier == "FU-001"
        assert fu.status == "todo"
        assert fu.priority == "no_priority"
        assert fu.created_by == USER_A
        assert fu.completed_at is None
        assert fu.assignee_ids == []

    def test_sequential_identifiers(self, workspace):
        ids = [_make(workspace, title=f"Item {i}").identifier for i in range(3)]
        assert ids == ["FU-001", "FU-002", "FU-003"]

    def test_identifiers_are_per_workspace(self, workspace):
        other = Workspace(name="Other")
        _db.session.add(other)
        _db.session.commit()
        _make(workspace)
        assert _make(other).identifier == "FU-001"

    def test_deleted_numbers_are_not_reused_below_highest(self, workspace):
        first = _make(workspace)
        _make(workspace)
        svc.delete_follow_up(first.id)
        _db.session.commit()
        assert _make(workspace).identifier == "FU-003"

    def test_legacy_status_aliases(self, workspace):
        assert _make(workspace, status="backlog").status == "todo"
        resolved = _make(workspace, status="resolved")
        assert resolved.status == "done"
        assert resolved.completed_at is not None

    def test_assignees_deduplicated(self, workspace):
        fu = _make(workspace, assignee_ids=["u1", "u2", "u1", ""])
        assert sorted(fu.assignee_ids) == ["u1", "u2"]

    @pytest.mark.parametrize("data", [
        {"title": ""},
        {"title": "x" * 201},
        {"title": "ok", "status": "blocked"},
        {"title": "ok", "priority": "critical"},
        {"title": "ok", "due_date": "31/01/2025"},
        {"title": "ok", "description": "x" * 2001},
        {"title": "ok", "assignee_ids": "u1"},
    ])
    def test_invalid_fields(self, workspace, data):
        with pytest.raises(ValidationError):
            svc.create_follow_up(workspace.id, data, USER_A)

    def test_cross_workspace_slide_rejected(self, workspace):
        from app.models.workspace import Slide

        other = Workspace(name="Other")
        _db.session.add(other)
        _db.session.flush()
        foreign = Slide(workspace_id=other.id, title="Foreign", slide_number=1)
        _db.session.add(foreign)
        _db.session.commit()
        with pytest.raises(ValidationError):
            svc.create_follow_up(workspace.id, {"title": "x", "slide_id": foreign.id}, USER_A)

    def test_unknown_workspace(self):
        with pytest.raises(NotFoundError):
            svc.create_follow_up("missing", {"title": "x"}, USER_A)

    def test_identifier_collision_is_retried(self, workspace, monkeypatch):
        _make(workspace)
        proposals = iter(["FU-001", "FU-001", "FU-002"])
        monkeypatch.setattr(svc, "_next_identifier", lambda workspace_id: next(proposals))

        fu = svc.create_follow_up(workspace.id, {"title": "Raced"}, USER_A)
        _db.session.commit()

        assert fu.identifier == "FU-002"
        assert FollowUp.query.count() == 2

    def test_identifier_retries_exhausted(self, workspace, monkeypatch):
        _make(workspace)
        monkeypatch.setattr(svc, "_next_identifier", lambda workspace_id: "FU-001")

        with pytest.raises(ConflictExhaustedError) as exc:
            svc.create_follow_up(workspace.id, {"title": "Always loses"}, USER_A)
        assert exc.value.field == "identifier"
        assert exc.value.attempts == 5
        _db.session.rollback()
        assert FollowUp.query.count() == 1


# ── Updates ─────────────────────────────────────────────────────────────


class TestUpdate:

    def test_done_records_current_slide(self, workspace, slide):
        fu = _make(workspace)
        updated = svc.update_follow_up(fu.id, {"status": "done"}, current_slide_id=slide.id)
        assert updated.status == "done"
        assert updated.completed_at is not None
        assert updated.resolved_at_slide_id == slide.id

    def test_explicit_resolved_slide_wins(self, workspace, slide_factory):
        viewing, resolved_on = slide_factory("2025-02-10"), slide_factory("2025-01-10")
        fu = _make(workspace)
        updated = svc.update_follow_up(
            fu.id, {"status": "done", "resolved_at_slide_id": resolved_on.id},
            current_slide_id=viewing.id,
        )
        assert updated.resolved_at_slide_id == resolved_on.id

    def test_reopen_clears_resolution(self, workspace, slide):
        fu = _make(workspace)
        svc.update_follow_up(fu.id, {"status": "done"}, current_slide_id=slide.id)
        reopened = svc.update_follow_up(fu.id, {"status": "in_progress"})
        assert reopened.completed_at is None
        assert reopened.resolved_at_slide_id is None

    def test_cancel_keeps_completion_untouched(self, workspace):
        fu = _make(workspace)
        cancelled = svc.update_follow_up(fu.id, {"status": "cancelled"})
        assert cancelled.status == "cancelled"
        assert cancelled.completed_at is None

    def test_same_status_is_noop(self, workspace, slide):
        fu = _make(workspace, status="done")
        stamped = fu.completed_at
        updated = svc.update_follow_up(fu.id, {"status": "resolved"}, current_slide_id=slide.id)
        assert updated.completed_at == stamped
        assert updated.resolved_at_slide_id is None

    def test_field_updates(self, workspace, definition):
        fu = _make(workspace, assignee_ids=["u1", "u2"])
        updated = svc.update_follow_up(fu.id, {
            "title": "Renamed",
            "priority": "urgent",
            "due_date": "2025-03-01",
            "definition_id": definition,
            "assignee_ids": ["u2", "u3"],
        })
        assert updated.title == "Renamed"
        assert updated.priority == "urgent"
        assert updated.due_date == date(2025, 3, 1)
        assert updated.definition_id == definition
        assert sorted(updated.assignee_ids) == ["u2", "u3"]

    def test_clear_due_date(self, workspace):
        fu = _make(workspace, due_date="2025-03-01")
        assert svc.update_follow_up(fu.id, {"due_date": None}).due_date is None

    def test_unknown(self):
        with pytest.raises(NotFoundError):
            svc.update_follow_up("missing", {"title": "x"})

    def test_delete(self, workspace, definition):
        fu_id = _make(workspace, definition_id=definition).id
        info = svc.delete_follow_up(fu_id)
        _db.session.commit()
        assert info == {"id": fu_id, "identifier": "FU-001", "definition_id": definition}
        assert FollowUp.query.count() == 0


# ── As-of classification ────────────────────────────────────────────────


class TestClassifyAsOf:

    def test_resolved_later_is_unresolved_earlier(self, workspace, slide_factory):
        resolved_slide = slide_factory("2025-01-15")
        fu = _make(workspace, status="done", resolved_at_slide_id=resolved_slide.id)
        assert svc.classify_as_of(fu, date(2025, 1, 10)) is False
        assert svc.classify_as_of(fu, date(2025, 1, 15)) is True
        assert svc.classify_as_of(fu, "2025-01-20") is True

    def test_resolved_before_reference(self, workspace, slide_factory):
        resolved_slide = slide_factory("2025-01-05")
        fu = _make(workspace, status="done", resolved_at_slide_id=resolved_slide.id)
        assert svc.classify_as_of(fu, date(2025, 1, 10)) is True

    def test_open_statuses_never_resolved(self, workspace, slide_factory):
        resolved_slide = slide_factory("2025-01-05")
        for status in ("todo", "in_progress", "cancelled"):
            fu = _make(workspace, status=status, resolved_at_slide_id=resolved_slide.id)
            assert svc.classify_as_of(fu, date(2025, 6, 1)) is False

    def test_missing_dates_are_unresolved(self, workspace, slide_factory):
        undated = slide_factory(None)
        no_slide = _make(workspace, status="done")
        undated_slide = _make(workspace, status="done", resolved_at_slide_id=undated.id)
        assert svc.classify_as_of(no_slide, date(2025, 1, 10)) is False
        assert svc.classify_as_of(undated_slide, date(2025, 1, 10)) is False
        assert svc.classify_as_of(undated_slide, None) is False

    def test_partition_preserves_order(self, workspace, slide_factory):
        early = slide_factory("2025-01-05")
        a = _make(workspace, title="a", status="done", resolved_at_slide_id=early.id)
        b = _make(workspace, title="b")
        c = _make(workspace, title="c", status="done", resolved_at_slide_id=early.id)
        resolved, unresolved = svc.partition_as_of([a, b, c], date(2025, 1, 10))
        assert [f.title for f in resolved] == ["a", "c"]
        assert [f.title for f in unresolved] == ["b"]


# ── Queries ─────────────────────────────────────────────────────────────


class TestListFollowUps:

    def test_filters(self, workspace, definition):
        _make(workspace, title="Urgent one", priority="urgent", assignee_ids=["u1"])
        _make(workspace, title="Done one", status="done")
        _make(workspace, title="Linked", definition_id=definition)

        def titles(**params):
            return sorted(f["title"] for f in svc.list_follow_ups(workspace.id, params)["follow_ups"])

        assert titles(status="resolved") == ["Done one"]
        assert titles(priority="urgent") == ["Urgent one"]
        assert titles(assignee_id="u1,u9") == ["Urgent one"]
        assert titles(unassigned="true") == ["Done one", "Linked"]
        assert titles(definition_id=definition) == ["Linked"]
        assert titles(search="LINK") == ["Linked"]

    def test_search_wildcards_are_literal(self, workspace):
        _make(workspace, title="Conversion at 5% of target")
        _make(workspace, title="Conversion at 50 of target")
        _make(workspace, title="net_revenue gap")
        _make(workspace, title="netXrevenue gap")

        def titles(search):
            return sorted(
                f["title"] for f in svc.list_follow_ups(workspace.id, {"search": search})["follow_ups"]
            )

        assert titles("5%") == ["Conversion at 5% of target"]
        assert titles("net_") == ["net_revenue gap"]
        assert titles("%") == ["Conversion at 5% of target"]

    def test_overdue(self, workspace):
        past = (date.today() - timedelta(days=3)).isoformat()
        _make(workspace, title="Late", due_date=past)
        _make(workspace, title="Late but done", due_date=past, status="done")
        _make(workspace, title="Future", due_date=(date.today() + timedelta(days=3)).isoformat())
        result = svc.list_follow_ups(workspace.id, {"overdue": "1"})
        assert [f["title"] for f in result["follow_ups"]] == ["Late"]

    def test_sort_by_priority(self, workspace):
        for priority in ("low", "urgent", "no_priority", "high"):
            _make(workspace, title=priority, priority=priority)
        result = svc.list_follow_ups(workspace.id, {"sort": "priority", "order": "asc"})
        assert [f["priority"] for f in result["follow_ups"]] == ["urgent", "high", "low", "no_priority"]

    def test_sort_by_due_date_nulls_last(self, workspace):
        _make(workspace, title="none")
        _make(workspace, title="later", due_date="2025-03-01")
        _make(workspace, title="sooner", due_date="2025-02-01")
        result = svc.list_follow_ups(workspace.id, {"sort": "due_date", "order": "asc"})
        assert [f["title"] for f in result["follow_ups"]] == ["sooner", "later", "none"]

    def test_invalid_sort(self, workspace):
        with pytest.raises(ValidationError):
            svc.list_follow_ups(workspace.id, {"sort": "body"})

    def test_pagination(self, workspace):
        for i in range(5):
            _make(workspace, title=f"Item {i}")
        result = svc.list_follow_ups(workspace.id, {"limit": "2", "page": "3"})
        assert len(result["follow_ups"]) == 1
        assert result["pagination"] == {
            "page": 3, "limit": 2, "total": 5, "total_pages": 3, "has_more": False,
        }

    def test_as_of_prefilters_and_classifies(self, workspace, slide_factory):
        jan, feb, mar = slide_factory("2025-01-10"), slide_factory("2025-02-10"), slide_factory("2025-03-10")
        undated = slide_factory(None)
        _make(workspace, title="raised jan, resolved feb", slide_id=jan.id,
              status="done", resolved_at_slide_id=feb.id)
        _make(workspace, title="raised mar", slide_id=mar.id)
        _make(workspace, title="no slide")
        _make(workspace, title="undated slide", slide_id=undated.id)

        result = svc.list_follow_ups(workspace.id, {"as_of": feb.id})
        by_title = {f["title"]: f["resolved_as_of"] for f in result["follow_ups"]}
        assert by_title == {
            "raised jan, resolved feb": True,
            "no slide": False,
            "undated slide": False,
        }

        result = svc.list_follow_ups(workspace.id, {"as_of": jan.id})
        by_title = {f["title"]: f["resolved_as_of"] for f in result["follow_ups"]}
        assert by_title["raised jan, resolved feb"] is False
        assert "raised mar" not in by_title

    def test_as_of_undated_reference_skips_prefilter(self, workspace, slide_factory):
        mar, undated = slide_factory("2025-03-10"), slide_factory(None)
        _make(workspace, title="raised mar", slide_id=mar.id)
        result = svc.list_follow_ups(workspace.id, {"as_of": undated.id})
        assert [f["resolved_as_of"] for f in result["follow_ups"]] == [False]


class TestDefinitionViews:

    def test_list_for_definition_without_slide(self, workspace, definition):
        _make(workspace, definition_id=definition)
        _make(workspace)
        result = svc.list_for_definition(definition)
        assert result["count"] == 1
        assert "resolved" not in result

    def test_list_for_definition_partitions(self, workspace, definition, slide_factory):
        jan, feb = slide_factory("2025-01-10"), slide_factory("2025-02-10")
        _make(workspace, title="fixed", definition_id=definition, slide_id=jan.id,
              status="done", resolved_at_slide_id=jan.id)
        _make(workspace, title="open", definition_id=definition, slide_id=jan.id)
        _make(workspace, title="future", definition_id=definition, slide_id=feb.id)

        result = svc.list_for_definition(definition, slide_id=jan.id)
        assert result["as_of"] == "2025-01-10"
        assert [f["title"] for f in result["resolved"]] == ["fixed"]
        assert [f["title"] for f in result["unresolved"]] == ["open"]
        assert (result["resolved_count"], result["unresolved_count"]) == (1, 1)

    def test_count_unresolved_is_sparse(self, workspace, definition, slide_factory):
        from app.services.definition_service import resolve_definition

        other = resolve_definition(workspace.id, "sales", "adidas-sales")
        _db.session.commit()
        jan = slide_factory("2025-01-10")
        _make(workspace, definition_id=definition, slide_id=jan.id)
        _make(workspace, definition_id=definition, slide_id=jan.id, status="done",
              resolved_at_slide_id=jan.id)
        _make(workspace, definition_id=other, slide_id=jan.id, status="done",
              resolved_at_slide_id=jan.id)

        assert svc.count_unresolved([definition, other], jan.id) == {definition: 1}

    def test_count_unresolved_batch_limit(self, slide):
        with pytest.raises(ValidationError):
            svc.count_unresolved([f"id-{i}" for i in range(101)], slide.id)

    def test_count_unresolved_unknown_slide(self, definition):
        with pytest.raises(NotFoundError):
            svc.count_unresolved([definition], "missing")
