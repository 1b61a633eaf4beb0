"""
Visible id registry: the set of entity ids currently known to exist.

The write driver is the only mutator. It adds an id after an insert has
committed and removes one after a delete has committed, so samplers never see
an uncommitted write. Deletes cascade along the FK graph the same way the
database does, which keeps FK-valid parameter generation honest after a
customer or security disappears.

All state sits behind one lock with O(1) critical sections: ids live in a
list paired with an index map so uniform sampling and swap-removal stay
constant time.
"""

from __future__ import annotations

import random
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import DefaultDict, Dict, List, Mapping, Optional, Set, Tuple

from rr_bench.domain.models import ENTITY_SCHEMAS, EntityKind
from rr_bench.errors import EmptyRegistryError

_Key = Tuple[EntityKind, int]

# Rejection-sampling attempts before falling back to a filtered scan.
_SAMPLE_ATTEMPTS = 16


@dataclass
class RegistrySnapshot:
    """
    Point-in-time view of the primary used to seed the registry.

    `rows[kind]` holds `(id, {fk_column: parent_id})` pairs; `securities` maps
    security id to `(ticker, sector)`.
    """

    rows: Dict[EntityKind, List[Tuple[int, Dict[str, int]]]] = field(default_factory=dict)
    securities: Dict[int, Tuple[Optional[str], Optional[str]]] = field(default_factory=dict)

    def count(self, kind: EntityKind) -> int:
        return len(self.rows.get(kind, ()))


class VisibleIdRegistry:
    """Concurrent-safe registry of live ids, with FK-aware cascading removal."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: Dict[EntityKind, List[int]] = {kind: [] for kind in EntityKind}
        self._pos: Dict[EntityKind, Dict[int, int]] = {kind: {} for kind in EntityKind}
        self._children: DefaultDict[_Key, Set[_Key]] = defaultdict(set)
        self._parents: Dict[_Key, Tuple[_Key, ...]] = {}
        self._tickers: Dict[int, str] = {}
        self._ticker_owners: Dict[str, int] = {}
        self._sectors: Dict[int, str] = {}
        self._retired: Dict[EntityKind, Set[int]] = {kind: set() for kind in EntityKind}
        self._high_water: Dict[EntityKind, int] = {kind: 0 for kind in EntityKind}
        self._corpus_ceiling: Dict[EntityKind, int] = {kind: 0 for kind in EntityKind}

    @classmethod
    def from_snapshot(cls, snapshot: RegistrySnapshot) -> "VisibleIdRegistry":
        registry = cls()
        # Parents first so child links resolve.
        for kind in EntityKind:
            for row_id, parents in sorted(snapshot.rows.get(kind, ()), key=lambda r: r[0]):
                ticker, sector = snapshot.securities.get(row_id, (None, None))
                if kind is not EntityKind.SECURITY:
                    ticker = sector = None
                registry.add(kind, row_id, parents=parents, ticker=ticker, sector=sector)
        registry.seal_corpus()
        return registry

    def seal_corpus(self) -> None:
        """Mark every id currently present as part of the pre-run corpus."""
        with self._lock:
            self._corpus_ceiling = dict(self._high_water)

    def add(
        self,
        kind: EntityKind,
        row_id: int,
        parents: Optional[Mapping[str, int]] = None,
        ticker: Optional[str] = None,
        sector: Optional[str] = None,
    ) -> bool:
        """
        Register a committed row.

        A row whose referenced parent is no longer live was removed by the
        cascade of a concurrent delete; it is retired instead of registered and
        `False` is returned.

        Raises
        ------
        ValueError
            If `row_id` is already live or was removed earlier; ids are never
            reused.
        """
        with self._lock:
            if row_id in self._pos[kind] or row_id in self._retired[kind]:
                raise ValueError(f"{kind.value} id {row_id} was already issued")
            self._high_water[kind] = max(self._high_water[kind], row_id)

            key = (kind, row_id)
            links: List[_Key] = []
            for column, parent_kind in ENTITY_SCHEMAS[kind].parents.items():
                if parents is None or parents.get(column) is None:
                    continue
                parent_key = (parent_kind, int(parents[column]))
                if parent_key[1] not in self._pos[parent_kind]:
                    self._retired[kind].add(row_id)
                    return False
                links.append(parent_key)

            self._pos[kind][row_id] = len(self._ids[kind])
            self._ids[kind].append(row_id)
            for parent_key in links:
                self._children[parent_key].add(key)
            if links:
                self._parents[key] = tuple(links)

            if kind is EntityKind.SECURITY:
                if ticker:
                    self._tickers[row_id] = ticker
                    self._ticker_owners[ticker] = row_id
                if sector:
                    self._sectors[row_id] = sector
            return True

    def remove(self, kind: EntityKind, row_id: int) -> List[_Key]:
        """
        Remove a row and, transitively, every row that references it.

        Returns the removed keys; unknown ids are ignored.
        """
        removed: List[_Key] = []
        with self._lock:
            stack: List[_Key] = [(kind, row_id)]
            while stack:
                key = stack.pop()
                if not self._discard(key):
                    continue
                removed.append(key)
                stack.extend(self._children.pop(key, ()))
        return removed

    def _discard(self, key: _Key) -> bool:
        kind, row_id = key
        pos = self._pos[kind].pop(row_id, None)
        if pos is None:
            return False
        self._retired[kind].add(row_id)
        ids = self._ids[kind]
        last = ids.pop()
        if last != row_id:
            ids[pos] = last
            self._pos[kind][last] = pos
        for parent_key in self._parents.pop(key, ()):
            siblings = self._children.get(parent_key)
            if siblings is not None:
                siblings.discard(key)
                if not siblings:
                    del self._children[parent_key]
        if kind is EntityKind.SECURITY:
            ticker = self._tickers.pop(row_id, None)
            if ticker is not None and self._ticker_owners.get(ticker) == row_id:
                del self._ticker_owners[ticker]
            self._sectors.pop(row_id, None)
        return True

    def sample_id(self, kind: EntityKind, rng: random.Random, corpus_only: bool = False) -> int:
        """
        Uniformly sample a live id of `kind`.

        With `corpus_only`, only ids that existed when the corpus was sealed
        are eligible.
        """
        with self._lock:
            ids = self._ids[kind]
            if not ids:
                raise EmptyRegistryError(f"no visible {kind.value} ids")
            if not corpus_only:
                return ids[rng.randrange(len(ids))]
            ceiling = self._corpus_ceiling[kind]
            for _ in range(_SAMPLE_ATTEMPTS):
                candidate = ids[rng.randrange(len(ids))]
                if candidate <= ceiling:
                    return candidate
            eligible = [row_id for row_id in ids if row_id <= ceiling]
            if not eligible:
                raise EmptyRegistryError(f"no visible corpus {kind.value} ids")
            return eligible[rng.randrange(len(eligible))]

    def sample_ticker(self, rng: random.Random) -> str:
        return self._sample_attribute(self._tickers, "ticker", rng)

    def sample_sector(self, rng: random.Random) -> str:
        return self._sample_attribute(self._sectors, "sector", rng)

    def _sample_attribute(self, values: Dict[int, str], label: str, rng: random.Random) -> str:
        # Sampling through security ids weights each value by how many
        # securities carry it, matching what the dataset exposes.
        with self._lock:
            ids = self._ids[EntityKind.SECURITY]
            if not ids or not values:
                raise EmptyRegistryError(f"no visible {label} values")
            for _ in range(_SAMPLE_ATTEMPTS):
                value = values.get(ids[rng.randrange(len(ids))])
                if value is not None:
                    return value
            keys = sorted(values)
            return values[keys[rng.randrange(len(keys))]]

    def contains(self, kind: EntityKind, row_id: int) -> bool:
        with self._lock:
            return row_id in self._pos[kind]

    def count(self, kind: EntityKind) -> int:
        with self._lock:
            return len(self._ids[kind])

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {kind.value: len(ids) for kind, ids in self._ids.items()}

    def ids(self, kind: EntityKind) -> List[int]:
        """Copy of the live ids of `kind` (unordered)."""
        with self._lock:
            return list(self._ids[kind])

    def high_water(self, kind: EntityKind) -> int:
        with self._lock:
            return self._high_water[kind]

    def ticker_in_use(self, ticker: str) -> bool:
        with self._lock:
            return ticker in self._ticker_owners

    def known_sectors(self) -> List[str]:
        with self._lock:
            return sorted(set(self._sectors.values()))


__all__ = ["RegistrySnapshot", "VisibleIdRegistry"]
