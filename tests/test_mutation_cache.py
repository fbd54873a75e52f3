"""Unit tests for the optimistic mutation cache."""

from __future__ import annotations

import pytest

from gradesync.core.errors import InvariantViolationError
from gradesync.services.mutation_cache import (
    DeleteRecords,
    InsertRecord,
    OptimisticMutationCache,
    UpdateRecords,
    matches_id,
    merge_changes,
)

KEY = "grades:subject-7"


@pytest.fixture
def grades() -> list[dict]:
    return [
        {"id": "g1", "student_id": "s1", "value": 7.0},
        {"id": "g2", "student_id": "s2", "value": 5.5},
    ]


@pytest.fixture
def cache(grades: list[dict]) -> OptimisticMutationCache:
    cache = OptimisticMutationCache()
    cache.load(KEY, grades)
    return cache


def _set_value(record_id: str, value: float) -> UpdateRecords:
    return UpdateRecords(matches_id(record_id), merge_changes({"value": value}))


class TestApplyAndCommit:
    def test_apply_shows_change_immediately(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        assert cache.find(KEY, "g1")["value"] == 9.0
        assert cache.find(KEY, "g2")["value"] == 5.5
        assert cache.is_pending(KEY) is True

    def test_commit_keeps_transformed_state(self, cache: OptimisticMutationCache, grades) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        refetch = cache.commit(KEY)

        assert refetch is False
        assert cache.get(KEY) == [{**grades[0], "value": 9.0}, grades[1]]
        assert cache.is_pending(KEY) is False

    def test_insert_appends_record(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, InsertRecord({"id": "g3", "student_id": "s3", "value": 8.0}))
        cache.commit(KEY)

        assert [r["id"] for r in cache.get(KEY)] == ["g1", "g2", "g3"]

    def test_delete_removes_matching_records(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, DeleteRecords(matches_id("g2")))

        assert [r["id"] for r in cache.get(KEY)] == ["g1"]

    def test_merge_changes_never_rewrites_id(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, UpdateRecords(matches_id("g1"), merge_changes({"id": "x", "value": 1.0})))

        assert cache.find(KEY, "g1")["value"] == 1.0
        assert cache.find(KEY, "x") is None

    def test_transform_changing_id_is_rejected(self, cache: OptimisticMutationCache, grades) -> None:
        bad = UpdateRecords(matches_id("g1"), lambda r: {**r, "id": "other"})

        with pytest.raises(InvariantViolationError) as exc_info:
            cache.apply_optimistic(KEY, bad)

        assert exc_info.value.code == "record_id_changed"
        assert cache.get(KEY) == grades
        assert cache.is_pending(KEY) is False

    def test_get_returns_independent_copy(self, cache: OptimisticMutationCache) -> None:
        records = cache.get(KEY)
        records[0]["value"] = 0.0

        assert cache.find(KEY, "g1")["value"] == 7.0


class TestRollback:
    def test_rollback_restores_exact_prior_state(self, cache: OptimisticMutationCache, grades) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        cache.rollback(KEY)

        assert cache.get(KEY) == grades
        assert cache.is_pending(KEY) is False

    def test_rollback_of_delete_restores_record(self, cache: OptimisticMutationCache, grades) -> None:
        cache.apply_optimistic(KEY, DeleteRecords(matches_id("g1")))
        cache.rollback(KEY)

        assert cache.get(KEY) == grades

    def test_snapshot_is_isolated_from_transform_mutating_input(self, cache: OptimisticMutationCache, grades) -> None:
        def mutate_in_place(record: dict) -> dict:
            record["value"] = -1.0
            return record

        cache.apply_optimistic(KEY, UpdateRecords(matches_id("g1"), mutate_in_place))
        cache.rollback(KEY)

        assert cache.get(KEY) == grades


class TestInvariants:
    def test_commit_without_pending_raises(self, cache: OptimisticMutationCache) -> None:
        with pytest.raises(InvariantViolationError) as exc_info:
            cache.commit(KEY)

        assert exc_info.value.code == "no_pending_mutation"

    def test_rollback_without_pending_raises(self, cache: OptimisticMutationCache) -> None:
        with pytest.raises(InvariantViolationError):
            cache.rollback("never-seen")

    def test_second_strict_apply_raises_and_keeps_first(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        with pytest.raises(InvariantViolationError) as exc_info:
            cache.apply_optimistic(KEY, _set_value("g2", 1.0))

        assert exc_info.value.code == "mutation_already_pending"
        assert cache.find(KEY, "g1")["value"] == 9.0
        assert cache.find(KEY, "g2")["value"] == 5.5

    def test_resolving_twice_raises(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        cache.commit(KEY)

        with pytest.raises(InvariantViolationError):
            cache.rollback(KEY)

    def test_drop_with_pending_raises(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        with pytest.raises(InvariantViolationError):
            cache.drop(KEY)

    def test_keys_are_independent(self, cache: OptimisticMutationCache) -> None:
        cache.load("students", [{"id": "s1", "name": "Ana"}])
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        cache.apply_optimistic("students", UpdateRecords(matches_id("s1"), merge_changes({"name": "Ana B."})))

        assert sorted(cache.pending_keys()) == sorted([KEY, "students"])


class TestCompose:
    def test_composed_mutations_roll_back_latest_first_without_handles(
        self, cache: OptimisticMutationCache, grades
    ) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        cache.apply_optimistic(KEY, _set_value("g2", 6.0), compose=True)

        cache.rollback(KEY)
        assert cache.find(KEY, "g1")["value"] == 9.0
        assert cache.find(KEY, "g2")["value"] == 5.5
        assert cache.is_pending(KEY) is True

        cache.rollback(KEY)
        assert cache.get(KEY) == grades
        assert cache.is_pending(KEY) is False

    def test_rollback_of_older_mutation_replays_newer(self, cache: OptimisticMutationCache) -> None:
        first = cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        second = cache.apply_optimistic(KEY, _set_value("g2", 6.0), compose=True)

        cache.rollback(KEY, first)

        assert cache.find(KEY, "g1")["value"] == 7.0
        assert cache.find(KEY, "g2")["value"] == 6.0
        assert cache.is_pending(KEY) is True

        cache.rollback(KEY, second)

        assert cache.find(KEY, "g2")["value"] == 5.5
        assert cache.is_pending(KEY) is False

    def test_newer_commit_survives_rollback_of_older(self, cache: OptimisticMutationCache) -> None:
        first = cache.apply_optimistic(KEY, _set_value("g1", 1.0))
        second = cache.apply_optimistic(KEY, _set_value("g2", 2.0), compose=True)

        cache.commit(KEY, second)
        assert cache.is_pending(KEY) is True

        cache.rollback(KEY, first)

        assert cache.find(KEY, "g1")["value"] == 7.0
        assert cache.find(KEY, "g2")["value"] == 2.0
        assert cache.is_pending(KEY) is False

    def test_commit_of_older_keeps_newer_rollback_exact(self, cache: OptimisticMutationCache) -> None:
        first = cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        second = cache.apply_optimistic(KEY, _set_value("g2", 6.0), compose=True)

        cache.commit(KEY, first)
        cache.rollback(KEY, second)

        assert cache.find(KEY, "g1")["value"] == 9.0
        assert cache.find(KEY, "g2")["value"] == 5.5

    def test_confirmed_mutation_is_rebased_by_load(self, cache: OptimisticMutationCache, grades) -> None:
        first = cache.apply_optimistic(KEY, _set_value("g1", 1.0))
        second = cache.apply_optimistic(KEY, _set_value("g2", 2.0), compose=True)
        cache.commit(KEY, second)

        cache.load(KEY, [{**grades[0], "value": 3.0}, grades[1]])
        cache.rollback(KEY, first)

        assert cache.find(KEY, "g1")["value"] == 3.0
        assert cache.find(KEY, "g2")["value"] == 2.0

    def test_resolving_a_handle_twice_raises(self, cache: OptimisticMutationCache) -> None:
        first = cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        cache.apply_optimistic(KEY, _set_value("g2", 6.0), compose=True)
        cache.commit(KEY, first)

        with pytest.raises(InvariantViolationError) as exc_info:
            cache.rollback(KEY, first)

        assert exc_info.value.code == "unknown_pending_mutation"
        assert cache.find(KEY, "g1")["value"] == 9.0

    def test_handle_from_another_key_is_rejected(self, cache: OptimisticMutationCache) -> None:
        cache.load("students", [{"id": "s1", "name": "Ana"}])
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        other = cache.apply_optimistic("students", UpdateRecords(matches_id("s1"), merge_changes({"name": "Ana B."})))

        with pytest.raises(InvariantViolationError):
            cache.commit(KEY, other)


class TestLoadAndInvalidate:
    def test_apply_on_unloaded_key_tracks_pending(self) -> None:
        cache = OptimisticMutationCache()

        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        assert cache.get(KEY) is None
        assert cache.is_pending(KEY) is True
        cache.rollback(KEY)
        assert cache.get(KEY) is None

    def test_load_rebases_pending_mutation(self, cache: OptimisticMutationCache, grades) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        fresh = [{**grades[0], "student_id": "s1"}, {**grades[1], "value": 4.0}]

        cache.load(KEY, fresh)

        assert cache.find(KEY, "g1")["value"] == 9.0
        assert cache.find(KEY, "g2")["value"] == 4.0
        cache.rollback(KEY)
        assert cache.get(KEY) == fresh

    def test_invalidate_without_pending_clears_entry(self, cache: OptimisticMutationCache) -> None:
        assert cache.invalidate(KEY) is True

        assert cache.get(KEY) is None
        assert cache.is_stale(KEY) is True

    def test_load_clears_stale_flag(self, cache: OptimisticMutationCache, grades) -> None:
        cache.invalidate(KEY)
        cache.load(KEY, grades)

        assert cache.is_stale(KEY) is False
        assert cache.get(KEY) == grades

    def test_invalidate_with_pending_keeps_optimistic_view(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        assert cache.invalidate(KEY) is True

        assert cache.is_stale(KEY) is True
        assert cache.find(KEY, "g1")["value"] == 9.0

    def test_deferred_invalidation_released_on_commit(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))

        assert cache.invalidate(KEY, defer_if_pending=True) is False
        assert cache.find(KEY, "g1")["value"] == 9.0

        assert cache.commit(KEY) is True
        assert cache.get(KEY) is None
        assert cache.is_stale(KEY) is True

    def test_deferred_invalidation_released_on_rollback(self, cache: OptimisticMutationCache) -> None:
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        cache.invalidate(KEY, defer_if_pending=True)

        assert cache.rollback(KEY) is True
        assert cache.get(KEY) is None

    def test_stats_count_operations(self, cache: OptimisticMutationCache) -> None:
        cache.get(KEY)
        cache.get("missing")
        cache.apply_optimistic(KEY, _set_value("g1", 9.0))
        cache.commit(KEY)
        cache.apply_optimistic(KEY, _set_value("g1", 1.0))
        cache.rollback(KEY)
        cache.invalidate(KEY)

        stats = cache.stats()

        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["commits"] == 1
        assert stats["rollbacks"] == 1
        assert stats["invalidations"] == 1
        assert stats["pending"] == 0
