# dag.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .errors import AmbiguousProvider, CycleDetected, IncompatibleJig, UnknownUnit
from .model import ScenarioDef, TestDef, UnitKind, unit_id


@dataclass(frozen=True)
class DependencyGraph:
    """
    The resolved test graph for one scenario on one jig.

    `order` is the linear execution order. `requires`/`suggests` hold the
    resolved (concrete) edges: node -> tests that must/should run before it.
    """
    scenario: str
    jig: Optional[str]
    nodes: Dict[str, TestDef]
    order: Tuple[str, ...]
    requires: Dict[str, Tuple[str, ...]]
    suggests: Dict[str, Tuple[str, ...]]
    assumed: FrozenSet[str] = field(default_factory=frozenset)

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.order)

    def executable(self) -> List[str]:
        """Nodes that will actually be run (assumed tests are excluded)."""
        return [n for n in self.order if n not in self.assumed]


# ----------------------------------------------------------------------
# Phase 1: alias collection
# ----------------------------------------------------------------------

def _index_tests(tests: Iterable[TestDef]) -> Dict[str, TestDef]:
    tests = list(tests)
    names = [t.name for t in tests]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate test names found: {dupes}")
    return {t.name: t for t in tests}


def build_provider_map(tests: Dict[str, TestDef], jig: Optional[str]) -> Dict[str, List[str]]:
    """
    Map each alias to the compatible concrete tests that provide it.

    A test always provides its own name. Candidates are sorted for stable
    error messages.
    """
    providers: Dict[str, Set[str]] = {}
    for name, test in tests.items():
        if not test.compatible_with(jig):
            continue
        providers.setdefault(name, set()).add(name)
        for alias in test.provides:
            providers.setdefault(unit_id(alias, UnitKind.TEST), set()).add(name)
    return {alias: sorted(names) for alias, names in providers.items()}


# ----------------------------------------------------------------------
# Phase 2: edge resolution + ordering
# ----------------------------------------------------------------------

class _Resolver:
    def __init__(self, tests: Dict[str, TestDef], jig: Optional[str]):
        self.tests = tests
        self.jig = jig
        self.providers = build_provider_map(tests, jig)
        self.selected: Set[str] = set()

    def resolve(self, ref: str, referenced_by: Optional[str], *, required: bool) -> Optional[str]:
        """
        Resolve a reference to exactly one concrete test name.

        Returns None only for an unresolvable soft reference.
        """
        name = unit_id(ref, UnitKind.TEST)

        test = self.tests.get(name)
        if test is not None and test.compatible_with(self.jig):
            return name

        candidates = [c for c in self.providers.get(name, []) if c != referenced_by]
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            chosen = [c for c in candidates if c in self.selected]
            if len(chosen) == 1:
                return chosen[0]
            raise AmbiguousProvider(name, candidates)

        if not required:
            return None
        if test is not None:
            raise IncompatibleJig(name, self.jig)
        raise UnknownUnit(name, referenced_by)


def build_graph(
    tests: Iterable[TestDef],
    scenario: ScenarioDef,
    jig: Optional[str] = None,
) -> DependencyGraph:
    """
    Build the dependency graph for `scenario` on `jig`.

    Starts from the scenario's terminal tests and pulls in every Requires and
    Suggests target. Dependencies are placed immediately before the first
    dependent that needs them; ties follow the scenario's listed order.

    Raises:
      CycleDetected, AmbiguousProvider, IncompatibleJig, UnknownUnit
    """
    by_name = _index_tests(tests)
    resolver = _Resolver(by_name, jig)

    # Explicit selections disambiguate providers for everything below them.
    terminals = [resolver.resolve(t, None, required=True) for t in scenario.tests]
    assumed = [resolver.resolve(t, None, required=True) for t in scenario.assume]
    resolver.selected.update(terminals)
    resolver.selected.update(assumed)
    assumed_set = frozenset(assumed)

    requires: Dict[str, Tuple[str, ...]] = {}
    suggests: Dict[str, Tuple[str, ...]] = {}
    order: List[str] = []
    done: Set[str] = set()
    stack: List[str] = []

    def visit(name: str) -> None:
        if name in done:
            return
        if name in stack:
            raise CycleDetected(stack[stack.index(name):] + [name])

        resolver.selected.add(name)
        test = by_name[name]
        if name in assumed_set:
            # Assumed tests count as passed; their own dependencies are not pulled in.
            requires[name] = ()
            suggests[name] = ()
        else:
            hard = [resolver.resolve(r, name, required=True) for r in test.requires]
            soft = [resolver.resolve(s, name, required=False) for s in test.suggests]
            requires[name] = tuple(dict.fromkeys(h for h in hard if h is not None))
            suggests[name] = tuple(
                dict.fromkeys(s for s in soft if s is not None and s not in requires[name])
            )

        stack.append(name)
        for dep in requires[name] + suggests[name]:
            visit(dep)
        stack.pop()

        done.add(name)
        order.append(name)

    for name in assumed:
        visit(name)
    for name in terminals:
        visit(name)

    # Assumed tests never run, so keep them out of the way of real ordering.
    order = [n for n in order if n in assumed_set] + [n for n in order if n not in assumed_set]

    return DependencyGraph(
        scenario=scenario.name,
        jig=jig,
        nodes={n: by_name[n] for n in order},
        order=tuple(order),
        requires=requires,
        suggests=suggests,
        assumed=assumed_set,
    )
