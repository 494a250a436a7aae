"""
Unit tests for edge delta computation.
"""

from socialgraph.graphsync.reconcile import compute_delta


class TestComputeDelta:
    """Tests for compute_delta."""

    def test_add_and_remove(self):
        delta = compute_delta({"Y": None, "Z": None}, {"X": None, "Y": None})

        assert delta.to_add == {"Z": None}
        assert delta.to_remove == ["X"]
        assert delta.to_update == {}
        assert len(delta) == 2

    def test_identical_sets_are_empty(self):
        delta = compute_delta({"X": None, "Y": None}, {"Y": None, "X": None})

        assert delta.is_empty
        assert len(delta) == 0

    def test_empty_desired_removes_everything(self):
        delta = compute_delta({}, {"C": None, "A": None, "B": None})

        assert delta.to_remove == ["A", "B", "C"]
        assert delta.to_add == {}

    def test_empty_current_adds_everything(self):
        delta = compute_delta({"A": "spam"}, {})
        assert delta.to_add == {"A": "spam"}

    def test_subtype_change_is_an_update(self):
        delta = compute_delta(
            {"A": "illegal", "B": "spam"},
            {"A": "spam", "B": "spam"},
        )

        assert delta.to_add == {}
        assert delta.to_remove == []
        assert delta.to_update == {"A": "illegal"}
        assert delta.upserts == {"A": "illegal"}

    def test_upserts_merge_adds_and_updates(self):
        delta = compute_delta({"A": "nudity", "B": None}, {"A": "spam"})
        assert delta.upserts == {"A": "nudity", "B": None}
