"""
Subset-sum resolver.

Finds one subset of candidate amounts (in cents) that adds up exactly to a
target.  Classic 0/1 dynamic programme over the sums 0..target:

  reached_by[s] = index of the first candidate that made sum s reachable

Candidates are scanned once, in list order, and sums are updated from the
top down so no candidate is used twice.  Walking back from the target
through reached_by gives the subset; because each entry is written once and
only ever points at an earlier candidate, the walk is deterministic and the
same input always yields the same subset.

"No solution" is a normal answer here, returned as None.
"""
import logging
import os
from typing import Hashable, Optional, Sequence

logger = logging.getLogger("apportion.subset_sum")

# One receipt's taxable subtotal in cents is small; anything past this is
# bad input (e.g. a tiny rate producing an absurd target) and is refused.
MAX_TARGET_CENTS = int(os.environ.get("MAX_TARGET_CENTS", "10000000"))


def find_subset(
    target: int,
    candidates: Sequence[tuple[Hashable, int]],
) -> Optional[list]:
    """
    Return the ids of a subset of ``candidates`` summing exactly to ``target``,
    in candidate order, or None when no such subset exists.

    ``candidates`` is a sequence of (id, amount_cents).  Zero and negative
    amounts are never chosen.  A target of 0 is met by the empty subset.
    """
    if target < 0:
        raise ValueError(f"Subset-sum target cannot be negative: {target}")
    if target == 0:
        return []

    usable = [(i, amount) for i, (_, amount) in enumerate(candidates) if amount > 0]
    if sum(amount for _, amount in usable) < target:
        return None
    if target > MAX_TARGET_CENTS:
        logger.warning("Target %d¢ exceeds MAX_TARGET_CENTS (%d) — skipping search",
                       target, MAX_TARGET_CENTS)
        return None

    reached_by: list[Optional[int]] = [None] * (target + 1)
    for index, amount in usable:
        for s in range(target, amount - 1, -1):
            if reached_by[s] is not None:
                continue
            rest = s - amount
            if rest == 0 or reached_by[rest] is not None:
                reached_by[s] = index
        if reached_by[target] is not None:
            break

    if reached_by[target] is None:
        return None

    chosen = []
    s = target
    while s > 0:
        index = reached_by[s]
        chosen.append(index)
        s -= candidates[index][1]

    return [candidates[i][0] for i in sorted(chosen)]
