"""
Authority set normalization and formatting.

Authority lists come back from the fastchain and the parachain in whatever
order the node happens to return them. Everything that compares or submits
an authority list goes through these helpers, so semantically identical sets
are never treated as different.
"""

from typing import Iterable

from .models import AuthorityEntry


def normalize_authorities(authorities: Iterable[AuthorityEntry]) -> list[AuthorityEntry]:
    """
    Sort an authority list into canonical order (authority id ascending).

    Args:
        authorities: Authority entries in any order

    Returns:
        New list of the same entries in canonical order
    """
    return sorted(authorities, key=lambda entry: entry.authority_id)


def authorities_equal(a: Iterable[AuthorityEntry], b: Iterable[AuthorityEntry]) -> bool:
    """
    Compare two authority lists ignoring order.

    Both the id and the weight of every entry must match.
    """
    left = normalize_authorities(a)
    right = normalize_authorities(b)
    if len(left) != len(right):
        return False
    return all(
        x.authority_id == y.authority_id and x.weight == y.weight
        for x, y in zip(left, right)
    )


def format_for_parachain(authorities: Iterable[AuthorityEntry]) -> list[tuple[str, str]]:
    """
    Render an authority list as call arguments for the parachain pallet.

    Weights are rendered as decimal strings, which the pallet accepts for
    its u64 weight type regardless of size.

    Args:
        authorities: Authority entries in any order

    Returns:
        List of (hex authority id, decimal weight) pairs in canonical order
    """
    return [
        (entry.authority_id, str(entry.weight))
        for entry in normalize_authorities(authorities)
    ]
