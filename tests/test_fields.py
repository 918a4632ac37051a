"""
Unit tests for the field metadata cache, document flattening and the
field selection state.
"""

import threading

import pytest

from filter_dsl import FieldCache, FieldMetadata, FieldState
from filter_dsl.documents import document_from_hit, extract_field_names


@pytest.fixture
def documents():
    """Create sample documents with nested fields."""
    return [
        {"_id": "1", "status": "open", "user": {"name": "alice", "id": 7}},
        {"_id": "2", "status": "closed", "host": {"ip": "10.0.0.1"}},
    ]


def assert_consistent(state: FieldState):
    """Check the selection invariants of a FieldState."""
    discovered = set(state.get_discovered_fields())
    order = state.get_ordered_selected_fields()
    assert len(order) == len(set(order))
    assert set(order) <= discovered
    for field in order:
        assert state.is_field_selected(field)


class TestFieldCache:
    """Test cases for FieldCache."""

    def test_get_missing(self):
        """Test unknown fields return None."""
        assert FieldCache().get("status") is None

    def test_set_and_get(self):
        """Test storing and replacing an entry."""
        cache = FieldCache()
        cache.set("age", FieldMetadata(type="long"))
        assert cache.get("age").type == "long"
        assert "age" in cache

        cache.set("age", FieldMetadata(type="integer"))
        assert cache.get("age").type == "integer"
        assert len(cache) == 1

    def test_missing(self):
        """Test missing reports uncached fields sorted and deduplicated."""
        cache = FieldCache()
        cache.set("b", FieldMetadata())
        assert cache.missing(["c", "b", "a", "c"]) == ["a", "c"]

    def test_set_defaults(self):
        """Test the built-in fields are seeded as keywords."""
        cache = FieldCache()
        cache.set_defaults()
        assert cache.get("_id").type == "keyword"
        assert cache.get("_index").searchable

    def test_populate_from_field_caps(self):
        """Test loading a field capabilities response."""
        cache = FieldCache()
        response = {
            "indices": ["detections-1"],
            "fields": {
                "age": {"long": {"type": "long", "searchable": True, "aggregatable": True}},
                "message": {"text": {"type": "text", "searchable": True, "aggregatable": False}},
                "internal": {"keyword": {"type": "keyword", "searchable": False}},
            },
        }

        assert cache.populate_from_field_caps(response) == 3
        assert cache.get("age").is_numeric
        assert cache.get("message").type == "text"
        assert not cache.get("message").aggregatable
        assert not cache.get("internal").searchable
        assert not cache.get("age").active

    def test_first_type_wins(self):
        """Test a field reported under several types keeps the first one."""
        cache = FieldCache()
        cache.populate_from_field_caps({
            "fields": {
                "code": {
                    "long": {"type": "long", "searchable": True},
                    "keyword": {"type": "keyword", "searchable": True},
                },
            },
        })
        assert cache.get("code").type == "long"

    def test_missing_caps_default(self):
        """Test capability flags default when the response omits them."""
        cache = FieldCache()
        cache.populate_from_field_caps({"fields": {"ts": {"date": {}}}})
        meta = cache.get("ts")
        assert meta.is_date
        assert meta.searchable
        assert not meta.aggregatable

    def test_malformed_response(self):
        """Test a response without fields is rejected."""
        with pytest.raises(ValueError):
            FieldCache().populate_from_field_caps({"indices": []})
        with pytest.raises(ValueError):
            FieldCache().populate_from_field_caps({"fields": []})

    def test_mark_active(self):
        """Test only cached fields are flagged."""
        cache = FieldCache()
        cache.set("status", FieldMetadata())
        cache.mark_active(["status", "unknown"])
        assert cache.get("status").active
        assert cache.get("unknown") is None

    def test_snapshot_is_a_copy(self):
        """Test modifying a snapshot leaves the cache untouched."""
        cache = FieldCache()
        cache.set("status", FieldMetadata())
        snapshot = cache.snapshot()
        snapshot["status"].searchable = False
        assert cache.get("status").searchable

    def test_concurrent_access(self):
        """Test parallel readers and writers."""
        cache = FieldCache()
        errors = []

        def writer(offset):
            for i in range(200):
                cache.set(f"field{offset}_{i}", FieldMetadata(type="long"))

        def reader():
            try:
                for i in range(200):
                    meta = cache.get(f"field0_{i}")
                    assert meta is None or meta.type == "long"
                    cache.missing([f"field1_{i}"])
            except AssertionError as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(cache) == 800


class TestDocuments:
    """Test cases for hit conversion and field extraction."""

    def test_document_from_hit(self):
        """Test hit metadata is merged into the source."""
        hit = {
            "_index": "detections-1",
            "_id": "abc",
            "_score": 1.5,
            "_source": {"status": "open", "user": {"name": "alice"}},
        }
        assert document_from_hit(hit) == {
            "status": "open",
            "user": {"name": "alice"},
            "_id": "abc",
            "_index": "detections-1",
            "_score": 1.5,
        }

    def test_null_score_dropped(self):
        """Test a null score is not added to the document."""
        document = document_from_hit({"_id": "abc", "_index": "i", "_score": None, "_source": {}})
        assert "_score" not in document

    def test_extract_nested_fields(self):
        """Test nested objects become dotted paths."""
        document = {"a": 1, "user": {"name": "x", "profile": {"email": "e"}}}
        assert extract_field_names(document) == ["a", "user.name", "user.profile.email"]

    def test_lists_and_nulls_are_leaves(self):
        """Test lists and None values are reported as fields."""
        document = {"tags": ["a", {"b": 1}], "missing": None}
        assert extract_field_names(document) == ["missing", "tags"]

    def test_empty_objects_contribute_nothing(self):
        """Test empty nested objects add no field."""
        assert extract_field_names({"user": {"tags": ["a"], "meta": {}}}) == ["user.tags"]


class TestFieldState:
    """Test cases for FieldState."""

    def test_update_from_documents(self, documents):
        """Test discovered fields are the union over the batch."""
        state = FieldState()
        assert state.update_from_documents(documents)
        assert state.get_discovered_fields() == [
            "_id", "host.ip", "status", "user.id", "user.name",
        ]

    def test_same_fields_no_change(self, documents):
        """Test a batch with the same field set is a no-op."""
        state = FieldState()
        state.update_from_documents(documents)
        assert not state.update_from_documents(list(reversed(documents)))

    def test_empty_batch_no_change(self, documents):
        """Test an empty batch keeps the current fields."""
        state = FieldState()
        state.update_from_documents(documents)
        state.select_field("status")

        assert not state.update_from_documents([])
        assert not state.update_from_documents(iter([]))
        assert "status" in state.get_discovered_fields()
        assert state.get_ordered_selected_fields() == ["status"]

    def test_fieldless_batch_clears_fields(self, documents):
        """Test documents without fields replace the discovered set with nothing."""
        state = FieldState()
        state.update_from_documents(documents)
        state.select_field("status")
        state.apply_filter("")

        assert state.update_from_documents([{}, {"meta": {}}])
        assert state.get_discovered_fields() == []
        assert state.get_ordered_selected_fields() == []
        assert state.get_filtered_fields() == []
        assert not state.update_from_documents([{}])

    def test_select_and_unselect(self, documents):
        """Test selection appends to the order and unselection removes it."""
        state = FieldState()
        state.update_from_documents(documents)

        assert state.select_field("status")
        assert state.select_field("user.name")
        assert not state.select_field("status")
        assert state.get_ordered_selected_fields() == ["status", "user.name"]

        assert state.unselect_field("status")
        assert not state.unselect_field("status")
        assert state.get_ordered_selected_fields() == ["user.name"]
        assert_consistent(state)

    def test_select_undiscovered_is_noop(self, documents):
        """Test only discovered fields can be selected."""
        state = FieldState()
        state.update_from_documents(documents)
        assert not state.select_field("nonexistent")
        assert state.get_ordered_selected_fields() == []

    def test_toggle_field(self, documents):
        """Test toggling flips the selection."""
        state = FieldState()
        state.update_from_documents(documents)
        assert state.toggle_field("status")
        assert state.is_field_selected("status")
        assert not state.toggle_field("status")
        assert not state.is_field_selected("status")
        assert not state.toggle_field("nonexistent")

    def test_move_field(self, documents):
        """Test moving swaps with the neighbour and stops at the ends."""
        state = FieldState()
        state.update_from_documents(documents)
        for field in ("status", "user.name", "host.ip"):
            state.select_field(field)

        assert state.move_field("host.ip", up=True)
        assert state.get_ordered_selected_fields() == ["status", "host.ip", "user.name"]

        assert not state.move_field("status", up=True)
        assert not state.move_field("user.name", up=False)
        assert not state.move_field("user.id", up=True)

        assert state.move_field("status", up=False)
        assert state.get_ordered_selected_fields() == ["host.ip", "status", "user.name"]

    def test_apply_filter(self, documents):
        """Test filtering matches unselected fields case-insensitively."""
        state = FieldState()
        state.update_from_documents(documents)
        state.select_field("user.name")

        assert state.apply_filter("USER") == ["user.id"]
        assert state.current_filter == "USER"
        assert state.apply_filter("") == ["_id", "host.ip", "status", "user.id"]

    def test_filtered_fields_follow_selection(self, documents):
        """Test the last filter result tracks selection changes."""
        state = FieldState()
        state.update_from_documents(documents)
        state.apply_filter("user")

        state.select_field("user.id")
        assert state.get_filtered_fields() == ["user.name"]

        state.unselect_field("user.id")
        assert state.get_filtered_fields() == ["user.id", "user.name"]

    def test_vanished_fields_are_unselected(self, documents):
        """Test selected fields missing from a new batch are dropped."""
        state = FieldState()
        state.update_from_documents(documents)
        state.select_field("status")
        state.select_field("host.ip")
        state.select_field("user.name")

        assert state.update_from_documents([{"status": "open", "user": {"name": "bob"}}])
        assert state.get_ordered_selected_fields() == ["status", "user.name"]
        assert not state.is_field_selected("host.ip")
        assert_consistent(state)

    def test_marks_cache_active(self, documents):
        """Test discovered fields are flagged active in the cache."""
        cache = FieldCache()
        cache.set("status", FieldMetadata())
        cache.set("unused", FieldMetadata())

        state = FieldState(cache)
        state.update_from_documents(documents)

        assert cache.get("status").active
        assert not cache.get("unused").active

    def test_reset(self, documents):
        """Test reset clears everything."""
        state = FieldState()
        state.update_from_documents(documents)
        state.select_field("status")
        state.apply_filter("st")
        state.reset()

        assert state.get_discovered_fields() == []
        assert state.get_ordered_selected_fields() == []
        assert state.get_filtered_fields() == []
        assert state.current_filter == ""

    def test_concurrent_selection(self, documents):
        """Test the invariants hold under concurrent mutation."""
        state = FieldState()
        state.update_from_documents(documents)
        fields = state.get_discovered_fields()

        def worker(n):
            for i in range(300):
                field = fields[(n + i) % len(fields)]
                if i % 3 == 0:
                    state.select_field(field)
                elif i % 3 == 1:
                    state.move_field(field, up=bool(i % 2))
                else:
                    state.unselect_field(field)

        def updater():
            for i in range(100):
                batch = documents if i % 2 == 0 else documents[:1]
                state.update_from_documents(batch)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        threads.append(threading.Thread(target=updater))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert_consistent(state)
