"""Permission targets and their expansion over the territorial hierarchy."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from cerca.permissions.document import ScopeTargets
from cerca.repository import territory

K = TypeVar("K")
V = TypeVar("V")

PROVINCIA_LEVEL = 3
COMARCA_LEVEL = 4


@dataclass(frozen=True)
class PermissionTarget:
    """Concrete anchor of a request, computed from the URL-addressed object."""

    arxiu_id: int | None = None
    llibre_id: int | None = None
    municipi_id: int | None = None
    pais_id: int | None = None
    provincia_id: int | None = None
    comarca_id: int | None = None
    ecles_id: int | None = None
    arxiu_ids: tuple[int, ...] = ()

    def is_empty(self) -> bool:
        return not any(
            (
                self.arxiu_id,
                self.llibre_id,
                self.municipi_id,
                self.pais_id,
                self.provincia_id,
                self.comarca_id,
                self.ecles_id,
                self.arxiu_ids,
            )
        )


@dataclass
class ResolvedTarget:
    """Every anchor reachable from a target by walking up the hierarchy."""

    pais_ids: set[int] = field(default_factory=set)
    provincia_ids: set[int] = field(default_factory=set)
    comarca_ids: set[int] = field(default_factory=set)
    municipi_ids: set[int] = field(default_factory=set)
    nivell_ids: set[int] = field(default_factory=set)
    ecles_ids: set[int] = field(default_factory=set)
    arxiu_ids: set[int] = field(default_factory=set)
    llibre_ids: set[int] = field(default_factory=set)

    def merge(self, other: ResolvedTarget) -> None:
        for name in _ANCHOR_FIELDS:
            getattr(self, name).update(getattr(other, name))

    def copy(self) -> ResolvedTarget:
        return ResolvedTarget(**{name: set(getattr(self, name)) for name in _ANCHOR_FIELDS})

    def matches(self, targets: ScopeTargets) -> bool:
        return any(getattr(self, name) & getattr(targets, name) for name in _ANCHOR_FIELDS)


_ANCHOR_FIELDS = (
    "pais_ids",
    "provincia_ids",
    "comarca_ids",
    "municipi_ids",
    "nivell_ids",
    "ecles_ids",
    "arxiu_ids",
    "llibre_ids",
)


class TTLCache(Generic[K, V]):
    """Bounded LRU map whose entries expire after ``ttl`` seconds."""

    def __init__(self, max_size: int, ttl: float) -> None:
        self.max_size = max_size
        self.ttl = ttl
        self._data: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: K) -> V | None:
        now = time.monotonic()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires <= now:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._data[key] = (time.monotonic() + self.ttl, value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class TargetResolver:
    """Expands targets through municipi, arxiu and llibre lookups with bounded caches."""

    def __init__(self, ttl: float = 600.0) -> None:
        self.municipis: TTLCache[int, ResolvedTarget] = TTLCache(5000, ttl)
        self.arxius: TTLCache[int, ResolvedTarget] = TTLCache(5000, ttl)
        self.llibres: TTLCache[int, ResolvedTarget] = TTLCache(10000, ttl)

    def clear(self) -> None:
        self.municipis.clear()
        self.arxius.clear()
        self.llibres.clear()

    async def resolve(self, db: AsyncSession, target: PermissionTarget) -> ResolvedTarget:
        resolved = ResolvedTarget()
        if target.pais_id:
            resolved.pais_ids.add(target.pais_id)
        if target.provincia_id:
            resolved.provincia_ids.add(target.provincia_id)
        if target.comarca_id:
            resolved.comarca_ids.add(target.comarca_id)
        if target.ecles_id:
            resolved.merge(await self._ecles(db, target.ecles_id))
        if target.municipi_id:
            resolved.merge(await self._municipi(db, target.municipi_id))
        for arxiu_id in {target.arxiu_id, *target.arxiu_ids} - {None, 0}:
            resolved.merge(await self._arxiu(db, arxiu_id))  # type: ignore[arg-type]
        if target.llibre_id:
            resolved.merge(await self._llibre(db, target.llibre_id))
        return resolved

    async def _ecles(self, db: AsyncSession, ecles_id: int) -> ResolvedTarget:
        chain = await territory.list_arquebisbat_ancestors(db, ecles_id)
        return ResolvedTarget(ecles_ids=set(chain) or {ecles_id})

    async def _municipi(self, db: AsyncSession, municipi_id: int) -> ResolvedTarget:
        cached = self.municipis.get(municipi_id)
        if cached is not None:
            return cached.copy()
        resolved = ResolvedTarget(municipi_ids={municipi_id})
        municipi = await territory.get_municipi(db, municipi_id)
        if municipi is not None:
            levels = municipi.nivell_ids
            resolved.nivell_ids.update(n for n in levels if n)
            if levels[PROVINCIA_LEVEL - 1]:
                resolved.provincia_ids.add(levels[PROVINCIA_LEVEL - 1])  # type: ignore[arg-type]
            if levels[COMARCA_LEVEL - 1]:
                resolved.comarca_ids.add(levels[COMARCA_LEVEL - 1])  # type: ignore[arg-type]
            for nivell_id in levels:
                if not nivell_id:
                    continue
                nivell = await territory.get_nivell(db, nivell_id)
                if nivell is not None and nivell.pais_id:
                    resolved.pais_ids.add(nivell.pais_id)
                    break
        self.municipis.set(municipi_id, resolved.copy())
        return resolved

    async def _arxiu(self, db: AsyncSession, arxiu_id: int) -> ResolvedTarget:
        cached = self.arxius.get(arxiu_id)
        if cached is not None:
            return cached.copy()
        resolved = ResolvedTarget(arxiu_ids={arxiu_id})
        arxiu = await territory.get_arxiu(db, arxiu_id)
        if arxiu is not None:
            if arxiu.municipi_id:
                resolved.merge(await self._municipi(db, arxiu.municipi_id))
            if arxiu.entitat_eclesiastica_id:
                resolved.merge(await self._ecles(db, arxiu.entitat_eclesiastica_id))
        self.arxius.set(arxiu_id, resolved.copy())
        return resolved

    async def _llibre(self, db: AsyncSession, llibre_id: int) -> ResolvedTarget:
        cached = self.llibres.get(llibre_id)
        if cached is not None:
            return cached.copy()
        resolved = ResolvedTarget(llibre_ids={llibre_id})
        llibre = await territory.get_llibre(db, llibre_id)
        if llibre is not None:
            for arxiu_id in await territory.list_arxiu_ids_for_llibre(db, llibre_id):
                resolved.merge(await self._arxiu(db, arxiu_id))
            if llibre.municipi_id:
                resolved.merge(await self._municipi(db, llibre.municipi_id))
            if llibre.arquebisbat_id:
                resolved.merge(await self._ecles(db, llibre.arquebisbat_id))
        self.llibres.set(llibre_id, resolved.copy())
        return resolved

