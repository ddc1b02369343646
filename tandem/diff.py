from __future__ import annotations

from typing import Hashable, Iterable, TypeVar

ID = TypeVar("ID", bound=Hashable)


def compute_removals(remote_ids: Iterable[ID], local_ids: Iterable[ID]) -> set[ID]:
    """Return local ids that no longer appear upstream.

    An empty ``remote_ids`` removes every local id. Callers must not get here after a
    failed fetch.
    """
    remote = set(remote_ids)
    return {item for item in local_ids if item is not None and item not in remote}
