"""
Fact Base
=========

Per-run store of provable static knowledge.

A fact is one of:

    CONSTANT  ConstantValue(v)   binding (or one read of it) always holds v
    PURE      Pure               calling the subject has no observable effect
    RANGE     RangeBounds(lo,hi) integer binding stays within [lo, hi]
    TYPE      TypeKnown(t)       binding always holds an exact instance of t

Facts are attached either to a ``Binding`` as a whole (``site=None``) or
to a single node, identified by its stable id, where the fact is only
known to hold at that point. A missing fact means *unknown*, never
*false*; consumers must treat absence conservatively.
"""

import itertools
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union


class FactKind(Enum):
    CONSTANT = auto()
    PURE = auto()
    RANGE = auto()
    TYPE = auto()


class BindingState(Enum):
    """Lifecycle of a name within one scope."""
    UNBOUND = auto()
    LOCAL = auto()
    GLOBAL = auto()
    SHADOWED = auto()   # local that hides a module-level or builtin name


@dataclass(frozen=True)
class Binding:
    name: str
    scope: str

    def __str__(self):
        return f'{self.name}@{self.scope}'


@dataclass(frozen=True)
class Bounds:
    """Inclusive integer interval; ``count`` is set for loop trip counts."""
    lo: int
    hi: int
    count: Optional[int] = None

    def __add__(self, other: 'Bounds') -> 'Bounds':
        return Bounds(self.lo + other.lo, self.hi + other.hi)

    def __contains__(self, value) -> bool:
        return self.lo <= value <= self.hi


Subject = Union[Binding, str]


@dataclass(frozen=True)
class Fact:
    fact_id: int
    kind: FactKind
    subject: Subject
    value: Any = None
    site: Optional[int] = None

    def __str__(self):
        where = f' at #{self.site}' if self.site is not None else ''
        if self.kind is FactKind.CONSTANT:
            return f'ConstantValue({self.subject} = {self.value!r}){where}'
        if self.kind is FactKind.PURE:
            return f'Pure({self.subject})'
        if self.kind is FactKind.RANGE:
            return f'RangeBounds({self.subject} in [{self.value.lo}, {self.value.hi}]){where}'
        return f'TypeKnown({self.subject}: {self.value.__name__}){where}'


class FactBase:
    """
    Indexed collection of facts for one analyzer run.

    Usage:
        >>> facts = FactBase()
        >>> f = facts.add(FactKind.PURE, 'len')
        >>> facts.pure('len') is f
        True
        >>> facts.invalidate('len')
        1
        >>> facts.pure('len') is None
        True
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self._facts: Dict[int, Fact] = {}
        self._index: Dict[Tuple[FactKind, Subject, Optional[int]], int] = {}
        self._by_site: Dict[Tuple[FactKind, int], int] = {}
        # Filled in by the analyzer: scope table keyed by scope node id
        self.scopes: Dict[int, Any] = {}
        self.module_scope: Any = None
        # Purity reports for module-level functions, keyed by callee key
        self.purity: Dict[str, Any] = {}
        # Static loop descriptions keyed by loop node id
        self.loops: Dict[int, Any] = {}

    # ---- Mutation ----

    def add(
        self,
        kind: FactKind,
        subject: Subject,
        value: Any = None,
        site: Optional[int] = None,
    ) -> Fact:
        key = (kind, subject, site)
        existing = self._index.get(key)
        if existing is not None:
            self._drop(existing)
        fact = Fact(next(self._ids), kind, subject, value, site)
        self._facts[fact.fact_id] = fact
        self._index[key] = fact.fact_id
        if site is not None:
            self._by_site[(kind, site)] = fact.fact_id
        return fact

    def invalidate(self, subject: Subject) -> int:
        """Drop every fact about *subject*; returns how many were removed."""
        doomed = [f.fact_id for f in self._facts.values() if f.subject == subject]
        for fact_id in doomed:
            self._drop(fact_id)
        return len(doomed)

    def invalidate_name(self, scope: str, name: str) -> int:
        return self.invalidate(Binding(name, scope))

    def _drop(self, fact_id: int) -> None:
        fact = self._facts.pop(fact_id)
        self._index.pop((fact.kind, fact.subject, fact.site), None)
        if fact.site is not None and self._by_site.get((fact.kind, fact.site)) == fact_id:
            del self._by_site[(fact.kind, fact.site)]

    # ---- Queries ----

    def get(self, fact_id: int) -> Optional[Fact]:
        return self._facts.get(fact_id)

    def lookup(
        self, kind: FactKind, subject: Subject, site: Optional[int] = None
    ) -> Optional[Fact]:
        fact_id = self._index.get((kind, subject, site))
        return self._facts.get(fact_id) if fact_id is not None else None

    def at_site(self, kind: FactKind, site: int) -> Optional[Fact]:
        fact_id = self._by_site.get((kind, site))
        return self._facts.get(fact_id) if fact_id is not None else None

    def constant_at(self, site: int) -> Optional[Fact]:
        return self.at_site(FactKind.CONSTANT, site)

    def constant(self, binding: Binding) -> Optional[Fact]:
        return self.lookup(FactKind.CONSTANT, binding)

    def pure(self, callee: str) -> Optional[Fact]:
        return self.lookup(FactKind.PURE, callee)

    def range_at(self, site: int) -> Optional[Fact]:
        return self.at_site(FactKind.RANGE, site)

    def type_at(self, site: int) -> Optional[Fact]:
        return self.at_site(FactKind.TYPE, site)

    def of_kind(self, kind: FactKind) -> List[Fact]:
        return [f for f in self._facts.values() if f.kind is kind]

    def scope_of(self, node_id: int):
        return self.scopes.get(node_id)

    def __iter__(self) -> Iterator[Fact]:
        return iter(list(self._facts.values()))

    def __len__(self) -> int:
        return len(self._facts)

    def __contains__(self, fact_id: int) -> bool:
        return fact_id in self._facts
