"""Tests for the annotation store: lazy threads, paging, counts and ownership."""

import pytest

from app.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from app.models import db as _db
from app.models.annotation import Comment, CommentThread
from app.models.workspace import Workspace
from app.services import annotation_service as svc
from app.services.definition_service import DefinitionFields, resolve_definition

USER_A = "user-alice"
USER_B = "user-bob"


def _second_definition(workspace):
    definition_id = resolve_definition(
        workspace.id, "sales", "adidas-sales",
        DefinitionFields(label="[Adidas] - Sales", category="Adidas", metric_name="Sales"),
    )
    _db.session.commit()
    return definition_id


def _point(definition, body="Spike here", bucket_value="2025-08-04", user=USER_A, **kw):
    thread, comment, created = svc.post_point_comment(
        definition, "week", bucket_value, user, body, **kw,
    )
    _db.session.commit()
    return thread, comment, created


class TestThreads:

    def test_no_thread_until_first_comment(self, definition):
        page = svc.get_point_thread(definition, "week", "2025-08-04")
        assert page == {"thread": None, "comments": [], "has_more": False, "next_cursor": None}
        assert CommentThread.query.count() == 0

    def test_first_comment_creates_thread(self, definition):
        thread, comment, created = _point(definition)
        assert created is True
        assert thread.scope == "point"
        assert thread.bucket_type == "week"
        assert thread.bucket_value == "2025-08-04"
        assert comment.thread_id == thread.id

    def test_second_comment_reuses_thread(self, definition):
        first, _, _ = _point(definition)
        second, _, created = _point(definition, body="Still high", user=USER_B)
        assert created is False
        assert first.id == second.id
        assert CommentThread.query.count() == 1

    def test_bucket_types_are_separate_threads(self, definition):
        week, _, _ = _point(definition)
        month, _, _ = svc.post_point_comment(definition, "month", "2025-08-01", USER_A, "Month view")
        _db.session.commit()
        assert week.id != month.id

    def test_entity_thread_per_slide(self, definition, slide_factory):
        jan, feb = slide_factory("2025-01-10"), slide_factory("2025-02-10")
        t1, _, _ = svc.post_entity_comment(definition, USER_A, "January note", slide_id=jan.id)
        t2, _, _ = svc.post_entity_comment(definition, USER_A, "February note", slide_id=feb.id)
        t3, _, _ = svc.post_entity_comment(definition, USER_A, "Global note")
        _db.session.commit()
        assert len({t1.id, t2.id, t3.id}) == 3
        assert t3.slide_id is None

        page = svc.get_entity_thread(definition, slide_id=jan.id)
        assert [c["body"] for c in page["comments"]] == ["January note"]

    def test_entity_thread_title(self, definition):
        thread, _, _ = svc.post_entity_comment(definition, USER_A, "Body", title="  Data gap  ")
        assert thread.title == "Data gap"

    def test_unknown_definition(self):
        with pytest.raises(NotFoundError):
            svc.post_point_comment("missing", "week", "2025-08-04", USER_A, "x")

    def test_unknown_slide(self, definition):
        with pytest.raises(NotFoundError):
            svc.post_entity_comment(definition, USER_A, "x", slide_id="missing")

    def test_slide_from_other_workspace(self, definition, slide_factory):
        other = Workspace(name="Other")
        _db.session.add(other)
        _db.session.commit()
        foreign = slide_factory("2025-01-10", ws=other)

        with pytest.raises(ValidationError):
            svc.post_entity_comment(definition, USER_A, "hello", slide_id=foreign.id)
        with pytest.raises(ValidationError):
            svc.get_entity_thread(definition, slide_id=foreign.id)
        _db.session.rollback()
        assert CommentThread.query.count() == 0

    def test_deleting_slide_removes_its_entity_thread(self, definition, slide):
        slide_thread, _, _ = svc.post_entity_comment(definition, USER_A, "On this slide", slide_id=slide.id)
        svc.post_entity_comment(definition, USER_A, "About the metric")
        _db.session.commit()
        slide_thread_id = slide_thread.id

        _db.session.delete(slide)
        _db.session.commit()
        _db.session.expire_all()

        assert CommentThread.query.filter_by(id=slide_thread_id).count() == 0
        assert svc.count_entity_comments([definition]) == {definition: 1}
        page = svc.get_entity_thread(definition)
        assert [c["body"] for c in page["comments"]] == ["About the metric"]

    def test_point_threads_span_slides(self, definition, slide):
        thread, _, _ = _point(definition)
        assert thread.slide_id is None

        _db.session.delete(slide)
        _db.session.commit()
        assert svc.get_point_thread(definition, "week", "2025-08-04")["thread"]["id"] == thread.id

    def test_timestamp_folds_to_bucket(self, definition):
        first, _, _ = _point(definition)
        again, _, created = svc.post_point_comment(
            definition, "week", None, USER_B, "Same week", timestamp="2025-08-07T10:30:00Z",
        )
        _db.session.commit()
        assert created is False
        assert again.id == first.id

        page = svc.get_point_thread(definition, "week", None, timestamp="20250806")
        assert len(page["comments"]) == 2

    def test_explicit_bucket_value_is_opaque(self, definition):
        thread, _, _ = _point(definition, bucket_value="2025-08-07")
        assert thread.bucket_value == "2025-08-07"

    def test_unparseable_timestamp(self, definition):
        with pytest.raises(ValidationError):
            svc.post_point_comment(definition, "week", None, USER_A, "x", timestamp="last tuesday")


class TestValidation:

    @pytest.mark.parametrize("body", ["", "   ", None, 12])
    def test_empty_body(self, definition, body):
        with pytest.raises(ValidationError):
            svc.post_point_comment(definition, "week", "2025-08-04", USER_A, body)

    def test_body_too_long(self, definition):
        with pytest.raises(ValidationError):
            svc.post_point_comment(definition, "week", "2025-08-04", USER_A, "x" * 10001)

    def test_body_trimmed(self, definition):
        _, comment, _ = _point(definition, body="  padded  ")
        assert comment.body == "padded"

    def test_unknown_bucket_type(self, definition):
        with pytest.raises(ValidationError):
            svc.post_point_comment(definition, "fortnight", "2025-08-04", USER_A, "x")

    def test_user_required(self, definition):
        with pytest.raises(ValidationError):
            svc.post_point_comment(definition, "week", "2025-08-04", None, "x")

    def test_parent_must_be_in_same_thread(self, definition):
        _, other_comment, _ = _point(definition, bucket_value="2025-07-28")
        with pytest.raises(ValidationError):
            svc.post_point_comment(
                definition, "week", "2025-08-04", USER_A, "reply", parent_id=other_comment.id,
            )

    def test_reply_in_same_thread(self, definition):
        thread, root, _ = _point(definition)
        _, reply, created = _point(definition, body="reply", parent_id=root.id)
        assert created is False
        assert reply.parent_id == root.id
        assert reply.thread_id == thread.id


class TestPagination:

    def test_pages_cover_all_comments_once(self, app, definition):
        app.config["COMMENT_PAGE_DEFAULT"] = 2
        try:
            posted = {_point(definition, body=f"c{i}")[1].id for i in range(5)}

            seen, cursor, pages = [], None, 0
            while True:
                page = svc.get_point_thread(definition, "week", "2025-08-04", cursor=cursor)
                pages += 1
                seen.extend(c["id"] for c in page["comments"])
                if not page["has_more"]:
                    assert page["next_cursor"] is None
                    break
                cursor = page["next_cursor"]
            assert pages == 3
            assert len(seen) == len(set(seen)) == 5
            assert set(seen) == posted
        finally:
            app.config["COMMENT_PAGE_DEFAULT"] = 20

    def test_limit_capped(self, definition):
        for i in range(3):
            _point(definition, body=f"c{i}")
        page = svc.get_point_thread(definition, "week", "2025-08-04", limit=1000)
        assert len(page["comments"]) == 3
        assert page["has_more"] is False

    @pytest.mark.parametrize("cursor", ["garbage", "abc_def", "123"])
    def test_malformed_cursor(self, definition, cursor):
        _point(definition)
        with pytest.raises(ValidationError):
            svc.get_point_thread(definition, "week", "2025-08-04", cursor=cursor)

    def test_cursor_round_trip(self, definition):
        _, comment, _ = _point(definition)
        created_at, comment_id = svc.decode_cursor(svc.encode_cursor(comment))
        assert comment_id == comment.id


class TestCounts:

    def test_point_counts_are_sparse(self, workspace, definition):
        other = _second_definition(workspace)
        _point(definition)
        _point(definition, body="again")
        _point(definition, bucket_value="2025-07-28")

        counts = svc.count_point_comments([definition, other], "week")
        assert counts == {definition: {"2025-08-04": 2, "2025-07-28": 1}}

    def test_point_counts_filtered_by_bucket_type(self, definition):
        _point(definition)
        assert svc.count_point_comments([definition], "month") == {}

    def test_counts_for_one_definition(self, definition):
        _point(definition)
        _point(definition, bucket_value="2025-07-28")
        assert svc.count_point_comments_for_definition(
            definition, "week", bucket_values=["2025-08-04", "2025-01-06"],
        ) == {"2025-08-04": 1}

    def test_entity_counts(self, workspace, definition):
        other = _second_definition(workspace)
        svc.post_entity_comment(definition, USER_A, "one")
        svc.post_entity_comment(definition, USER_B, "two")
        _db.session.commit()
        assert svc.count_entity_comments([definition, other]) == {definition: 2}

    def test_batch_limit(self, definition):
        with pytest.raises(ValidationError):
            svc.count_point_comments([f"id-{i}" for i in range(101)], "week")

    def test_list_point_threads(self, definition):
        _point(definition, bucket_value="2025-08-04")
        _point(definition, bucket_value="2025-07-28")
        threads = svc.list_point_threads(definition, bucket_type="week")
        assert [t["thread"]["bucket_value"] for t in threads] == ["2025-07-28", "2025-08-04"]
        assert all(len(t["comments"]) == 1 for t in threads)
        assert threads[1]["thread"]["bucket_label"] == "Week of 04 Aug 2025"

    def test_chart_buckets_detects_type(self):
        bucket_type, values = svc.chart_buckets(["2025-08-04", "2025-08-11", "2025-08-13", "2025-08-18"])
        assert bucket_type == "week"
        assert values == ["2025-08-04", "2025-08-11", "2025-08-18"]

    def test_chart_buckets_explicit_type(self):
        assert svc.chart_buckets(["202507", "202508", "202509"], "quarter") == ("quarter", ["2025-07-01"])

    def test_chart_buckets_needs_list(self):
        with pytest.raises(ValidationError):
            svc.chart_buckets("2025-08-04")


class TestEditDelete:

    def test_author_can_edit(self, definition):
        _, comment, _ = _point(definition)
        edited = svc.edit_comment(comment.id, USER_A, "Corrected")
        assert edited.body == "Corrected"

    def test_other_user_cannot_edit(self, definition):
        _, comment, _ = _point(definition)
        with pytest.raises(PermissionDeniedError):
            svc.edit_comment(comment.id, USER_B, "Hijack")

    def test_other_user_cannot_delete(self, definition):
        _, comment, _ = _point(definition)
        with pytest.raises(PermissionDeniedError):
            svc.delete_comment(comment.id, USER_B)
        assert _db.session.get(Comment, comment.id) is not None

    def test_delete_removes_reply_subtree(self, definition):
        thread, root, _ = _point(definition)
        _, reply, _ = _point(definition, body="reply", parent_id=root.id, user=USER_B)
        _, nested, _ = _point(definition, body="nested", parent_id=reply.id)
        _, sibling, _ = _point(definition, body="sibling")
        subtree = {root.id, reply.id, nested.id}
        thread_id, sibling_id = thread.id, sibling.id

        result = svc.delete_comment(root.id, USER_A)
        _db.session.commit()

        assert set(result["deleted_ids"]) == subtree
        assert result["thread_id"] == thread_id
        assert result["definition_id"] == definition
        remaining = [c.id for c in Comment.query.all()]
        assert remaining == [sibling_id]

    def test_delete_unknown(self):
        with pytest.raises(NotFoundError):
            svc.delete_comment("missing", USER_A)
