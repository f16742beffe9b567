from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

T = TypeVar("T")

Score = Tuple[float, float]


def assign_ranks(entries: Iterable[T], score: Callable[[T], Score]) -> List[Tuple[int, T]]:
    """Rank ``entries`` by ``score`` descending using competition ranking.

    Equal ``(primary, secondary)`` scores share a rank and the next distinct
    score takes its 1-based position, so ``[(100, 5), (100, 5), (50, 1)]``
    ranks as ``[1, 1, 3]``. Ties keep the caller's order (stable sort).
    Returns ``(rank, entry)`` pairs in ranked order; nothing is mutated.
    """
    ordered = sorted(entries, key=score, reverse=True)

    ranked: List[Tuple[int, T]] = []
    current_rank = 0
    previous: Optional[Score] = None
    for index, entry in enumerate(ordered):
        value = tuple(score(entry))
        if index == 0 or value != previous:
            current_rank = index + 1
        previous = value
        ranked.append((current_rank, entry))
    return ranked
