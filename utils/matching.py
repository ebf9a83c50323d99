"""
Fuzzy name suggestions for searches that matched nothing.

Scoring a term against every cached name is CPU-bound, so the work runs in
a worker thread via `asyncio.to_thread` and never stalls the event loop.
"""

import asyncio
import difflib
from typing import Iterable, List


def _rank_suggestions(term: str, names: List[str], n: int, cutoff: float) -> List[str]:
    """
    Prefix hits first (alphabetical), then `difflib` similarity matches.

    Args:
        term: Lowercased search term.
        names: Candidate names.
        n: Maximum number of suggestions.
        cutoff: Minimum similarity ratio in [0, 1] for fuzzy hits.
    """
    prefixed = sorted(name for name in names if name.startswith(term))
    fuzzy = difflib.get_close_matches(term, names, n=n, cutoff=cutoff)

    result: List[str] = []
    for name in prefixed + fuzzy:
        if name not in result:
            result.append(name)
        if len(result) >= n:
            break
    return result


async def suggest_names(
    term: str, names: Iterable[str], n: int = 3, cutoff: float = 0.6
) -> List[str]:
    """
    Suggest up to `n` known names close to `term`.

    Returns:
        Best suggestions first; an empty list for an empty term or no names.
    """
    term = (term or "").strip().lower()
    candidates = list(dict.fromkeys(names))
    if not term or not candidates:
        return []

    return await asyncio.to_thread(_rank_suggestions, term, candidates, n, cutoff)
