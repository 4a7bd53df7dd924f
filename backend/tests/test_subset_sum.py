"""
Tests for the subset-sum resolver.

Small inputs are checked against an exhaustive search so both "found a
subset" and "no subset exists" answers are verified, not just trusted.
"""
import random
from itertools import combinations

import pytest

from services import subset_sum
from services.subset_sum import find_subset


def brute_force_reachable(target, amounts):
    """True if some subset of amounts sums to target (n ≤ 12)."""
    for r in range(0, len(amounts) + 1):
        for combo in combinations(amounts, r):
            if sum(combo) == target:
                return True
    return False


def as_candidates(amounts):
    return [(f"i{n}", a) for n, a in enumerate(amounts)]


def subset_total(ids, candidates):
    by_id = dict(candidates)
    return sum(by_id[i] for i in ids)


# ── Basic behaviour ──────────────────────────────────────────────────────────

class TestFindSubset:

    def test_single_item_match(self):
        cands = [("a", 350), ("b", 250), ("c", 4000)]
        assert find_subset(4000, cands) == ["c"]

    def test_multi_item_match(self):
        cands = [("a", 350), ("b", 250), ("c", 4000)]
        assert find_subset(600, cands) == ["a", "b"]

    def test_all_items(self):
        cands = [("a", 350), ("b", 250), ("c", 4000)]
        assert find_subset(4600, cands) == ["a", "b", "c"]

    def test_no_solution_returns_none(self):
        assert find_subset(360, [("a", 250), ("b", 100)]) is None

    def test_target_above_total_fails_fast(self):
        assert find_subset(10_000, [("a", 250), ("b", 100)]) is None

    def test_zero_target_is_empty_subset(self):
        assert find_subset(0, [("a", 250)]) == []

    def test_negative_target_raises(self):
        with pytest.raises(ValueError):
            find_subset(-1, [("a", 250)])

    def test_empty_candidates(self):
        assert find_subset(100, []) is None

    def test_no_reuse_of_a_candidate(self):
        # 200 would need "a" twice
        assert find_subset(200, [("a", 100), ("b", 150)]) is None

    def test_zero_and_negative_amounts_never_chosen(self):
        cands = [("zero", 0), ("discount", -100), ("a", 300)]
        assert find_subset(300, cands) == ["a"]
        assert find_subset(200, cands) is None

    def test_duplicate_amounts_pick_earliest(self):
        cands = [("first", 100), ("second", 100), ("third", 100)]
        assert find_subset(100, cands) == ["first"]
        assert find_subset(200, cands) == ["first", "second"]

    def test_scan_order_is_the_tie_break(self):
        # {a, b} and {c} both sum to 500; candidate "a" reaches 500 first
        # only through b, so the order of the list decides.
        assert find_subset(500, [("a", 200), ("b", 300), ("c", 500)]) == ["a", "b"]
        assert find_subset(500, [("c", 500), ("a", 200), ("b", 300)]) == ["c"]

    def test_deterministic(self):
        cands = as_candidates([199, 349, 99, 1299, 450, 250, 100, 875])
        first = find_subset(1549, cands)
        for _ in range(5):
            assert find_subset(1549, cands) == first

    def test_result_in_candidate_order(self):
        cands = as_candidates([500, 100, 300, 700])
        ids = find_subset(1000, cands)
        assert ids == sorted(ids, key=lambda i: int(i[1:]))

    def test_target_above_cap_refused(self, monkeypatch):
        monkeypatch.setattr(subset_sum, "MAX_TARGET_CENTS", 1000)
        assert find_subset(1500, [("a", 1500)]) is None


# ── Properties against brute force ───────────────────────────────────────────

class TestAgainstBruteForce:

    @pytest.mark.parametrize("seed", range(20))
    def test_finds_subset_of_distinct_prices(self, seed):
        rng = random.Random(seed)
        n = rng.randint(1, 12)
        amounts = rng.sample(range(1, 3000), n)
        chosen = rng.sample(amounts, rng.randint(1, n))
        target = sum(chosen)
        cands = as_candidates(amounts)

        ids = find_subset(target, cands)

        assert ids is not None
        assert len(set(ids)) == len(ids)
        assert subset_total(ids, cands) == target

    @pytest.mark.parametrize("seed", range(20))
    def test_agrees_with_brute_force(self, seed):
        rng = random.Random(1000 + seed)
        n = rng.randint(1, 10)
        amounts = [rng.randint(1, 60) * 5 for _ in range(n)]   # coarse prices → many gaps
        target = rng.randint(1, sum(amounts) + 20)
        cands = as_candidates(amounts)

        ids = find_subset(target, cands)

        if brute_force_reachable(target, amounts):
            assert ids is not None
            assert subset_total(ids, cands) == target
        else:
            assert ids is None
