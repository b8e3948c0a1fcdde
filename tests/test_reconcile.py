import copy

import pytest

from channel_harvester.models import ImageRecord
from channel_harvester.reconcile import (
    DualKeyIndex,
    IndexInvariantError,
    canonicalize,
    merge_records,
)

U1 = "https://cdn4.telesco.pe/file/one.jpg"
U2 = "https://cdn4.telesco.pe/file/two.jpg"
U3 = "https://cdn4.telesco.pe/file/three.jpg"


def rec(id, url, *, message_id=1, date=1000, width=800, height=600, caption=None):
    return ImageRecord(
        id=id,
        message_id=message_id,
        url=url,
        width=width,
        height=height,
        date=date,
        caption=caption,
    )


class TestDualKeyIndex:
    def test_first_writer_wins_per_url(self):
        index = DualKeyIndex([rec("A", U1), rec("B", U1 + "?v=2")])
        assert index.id_for_url(U1) == "A"
        assert len(index) == 2

    def test_put_rekeys_on_shared_url(self):
        index = DualKeyIndex([rec("A", U1)])
        replaced = index.put(rec("B", U1 + "?t=9"))
        assert replaced.id == "A"
        assert "A" not in index
        assert index.id_for_url(U1) == "B"

    def test_put_moves_url_entry_for_same_id(self):
        index = DualKeyIndex([rec("A", U1)])
        index.put(rec("A", U2))
        assert index.id_for_url(U1) is None
        assert index.id_for_url(U2) == "A"

    def test_put_evicts_both_holders(self):
        index = DualKeyIndex([rec("A", U1), rec("B", U2)])
        index.put(rec("B", U1))
        assert [r.id for r in index.values()] == ["B"]
        assert index.id_for_url(U2) is None
        assert index.id_for_url(U1) == "B"

    def test_check_detects_drift(self):
        index = DualKeyIndex([rec("A", U1)])
        index._by_url[U2] = "A"
        with pytest.raises(IndexInvariantError):
            index.check()


class TestMergeRecords:
    def test_new_record_is_counted(self):
        result = merge_records([rec("A", U1, date=1)], [rec("B", U2, date=2)])
        assert result.new_count == 1
        assert result.updated_count == 0
        assert [r.id for r in result.images] == ["B", "A"]

    def test_url_rotation_keeps_one_record_under_new_id(self):
        result = merge_records([rec("A", U1)], [rec("B", U1)])
        matching = [r for r in result.images if r.normalized_url == U1]
        assert [r.id for r in matching] == ["B"]
        assert result.new_count == 0
        assert result.updated_count == 1

    def test_url_rotation_ignores_query_string(self):
        result = merge_records([rec("A", U1 + "?token=old")], [rec("B", U1 + "?token=new")])
        assert len(result.images) == 1
        assert result.images[0].url == U1 + "?token=new"

    def test_id_stable_url_change_updates_in_place(self):
        result = merge_records([rec("A", U1)], [rec("A", U2)])
        assert len(result.images) == 1
        assert result.images[0].id == "A"
        assert result.images[0].url == U2
        assert result.updated_count == 1
        # No residual URL entry: re-adding U1 under a fresh id is genuinely new.
        again = merge_records(result.images, [rec("C", U1)])
        assert again.new_count == 1

    def test_identical_record_is_not_an_update(self):
        existing = [rec("A", U1)]
        result = merge_records(existing, [rec("A", U1)])
        assert result.new_count == 0
        assert result.updated_count == 0

    def test_strict_filter_applies_to_merged_catalog(self):
        result = merge_records([rec("A", U1, width=0, height=0)], [rec("B", U2, width=100, height=900)])
        assert result.images == []

    def test_idempotent(self):
        existing = [rec("A", U1, date=5), rec("B", U2, message_id=2, date=9)]
        batch = [rec("C", U1, date=5), rec("D", U3, message_id=3, date=7), rec("B", U3 + "?x=1", message_id=2, date=9)]

        once = merge_records(copy.deepcopy(existing), copy.deepcopy(batch)).images
        twice = merge_records(once, copy.deepcopy(batch)).images
        assert twice == once

    def test_sorted_newest_first(self):
        existing = [rec(f"e{i}", f"https://cdn.example/e{i}.jpg", message_id=i + 1, date=d) for i, d in enumerate([5, 50, 1])]
        new = [rec(f"n{i}", f"https://cdn.example/n{i}.jpg", message_id=i + 10, date=d) for i, d in enumerate([30, 2, 99])]
        images = merge_records(existing, new).images
        assert all(images[i].date >= images[i + 1].date for i in range(len(images) - 1))


class TestCanonicalize:
    def test_keeps_largest_image_per_message(self):
        small = rec("mobile_42_0", "https://cdn.example/42a.jpg", message_id=42, width=300, height=200, date=10)
        large = rec("mobile_42_1", "https://cdn.example/42b.jpg", message_id=42, width=800, height=600, date=10)
        assert canonicalize([small, large]) == [large]

    def test_same_url_keeps_most_recent(self):
        old = rec("mobile_7_0", U1 + "?v=1", message_id=7, date=1)
        new = rec("mobile_7_1", U1 + "?v=2", message_id=7, date=2)
        assert canonicalize([old, new]) == [new]

    def test_area_tie_broken_by_date(self):
        a = rec("a", U1, message_id=5, date=1)
        b = rec("b", U2, message_id=5, date=3)
        assert canonicalize([a, b]) == [b]

    def test_url_shared_across_messages_kept_once(self):
        a = rec("a", U1, message_id=1, date=5)
        b = rec("b", U1, message_id=2, date=4)
        assert [r.id for r in canonicalize([a, b])] == ["a"]

    def test_orphans_deduped_by_url(self):
        a = rec("a", U1, message_id=0, date=1)
        b = rec("b", U1, message_id=0, date=2)
        c = rec("c", U2, message_id=9, date=3)
        assert [r.id for r in canonicalize([a, b, c])] == ["c", "a"]

    def test_drops_decorative_records(self):
        icon = rec("i", "https://cdn.example/icon.png", message_id=3)
        assert canonicalize([icon]) == []


class TestMergeScale:
    def test_insert_checks_only_touched_keys(self, monkeypatch):
        calls = []
        original = DualKeyIndex.check

        def counting(self):
            calls.append(len(self))
            original(self)

        monkeypatch.setattr(DualKeyIndex, "check", counting)
        existing = [rec(f"e{i}", f"https://cdn.example/e{i}.jpg", message_id=i + 1) for i in range(3000)]
        new = [rec(f"n{i}", f"https://cdn.example/n{i}.jpg", message_id=i + 5000) for i in range(3000)]

        result = merge_records(existing, new)

        assert result.new_count == 3000
        assert len(result.images) == 6000
        assert calls == [3000]

    def test_put_rejects_drift_on_touched_key(self):
        index = DualKeyIndex([rec("A", U1), rec("B", U2)])
        index._by_url[U1] = "B"
        with pytest.raises(IndexInvariantError):
            index.put(rec("A", U3))
