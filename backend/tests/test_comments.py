import pytest

from app.engine.comments import child_depth, extract_mentions, build_thread, collect_descendants
from app.errors import InvalidInput


def row(id_, parent_id=None, created_at="2026-03-01T10:00:00+00:00"):
    return {"id": id_, "parent_id": parent_id, "created_at": created_at, "text": id_}


class TestChildDepth:
    def test_top_level(self):
        assert child_depth(None) == 0

    def test_two_levels_of_replies(self):
        assert child_depth({"depth": 0}) == 1
        assert child_depth({"depth": 1}) == 2

    def test_third_level_rejected(self):
        with pytest.raises(InvalidInput):
            child_depth({"depth": 2})


class TestExtractMentions:
    def test_unique_in_order(self):
        assert extract_mentions("hey @alice and @bob, also @alice") == ["alice", "bob"]

    def test_email_is_not_a_mention(self):
        assert extract_mentions("mail me at foo@bar.com") == []

    def test_trailing_punctuation(self):
        assert extract_mentions("thanks @carol.") == ["carol"]

    def test_empty(self):
        assert extract_mentions("") == []
        assert extract_mentions(None) == []


class TestBuildThread:
    def test_nests_replies(self):
        rows = [
            row("c1", created_at="2026-03-01T10:00:00+00:00"),
            row("r1", "c1", created_at="2026-03-01T11:00:00+00:00"),
            row("rr1", "r1", created_at="2026-03-01T12:00:00+00:00"),
            row("c2", created_at="2026-03-01T09:00:00+00:00"),
        ]
        thread = build_thread(rows)
        assert [c["id"] for c in thread] == ["c2", "c1"]
        assert thread[1]["replies"][0]["id"] == "r1"
        assert thread[1]["replies"][0]["replies"][0]["id"] == "rr1"

    def test_orphans_dropped(self):
        thread = build_thread([row("c1"), row("r1", "gone")])
        assert [c["id"] for c in thread] == ["c1"]


class TestCollectDescendants:
    def test_whole_subtree(self):
        rows = [row("c1"), row("r1", "c1"), row("r2", "c1"), row("rr1", "r1"), row("c2")]
        assert sorted(collect_descendants(rows, "c1")) == ["c1", "r1", "r2", "rr1"]

    def test_leaf(self):
        assert collect_descendants([row("c1"), row("r1", "c1")], "r1") == ["r1"]
