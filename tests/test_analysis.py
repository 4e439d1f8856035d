"""
Tests for the analysis modules: scopes, constant propagation, purity and
range inference.

Validates:
  - Binding-level and site-level constants
  - Purity classification of builtins and module functions
  - Range, type and trip-count facts for static loops
  - Escape and dynamic-scope detection
  - Absent facts mean unknown
"""

import ast
import textwrap

import pytest

from astpipe.analysis.analyzer import Analyzer
from astpipe.analysis.facts import Binding, Bounds, FactBase, FactKind
from astpipe.analysis.purity_analyzer import PurityLevel
from astpipe.analysis.scopes import ScopeCollector, bound_before, is_stable_global


def analyze(source, external=()):
    tree = ast.parse(textwrap.dedent(source))
    facts = Analyzer(external).run(tree)
    return tree, facts


def reads_of(tree, name):
    return [n for n in ast.walk(tree)
            if isinstance(n, ast.Name) and n.id == name and isinstance(n.ctx, ast.Load)]


def scope_named(facts, qualname):
    for scope in facts.module_scope.walk():
        if scope.qualname == qualname:
            return scope
    raise KeyError(qualname)


# ---------- Fact Base ----------

class TestFactBase:
    def setup_method(self):
        self.facts = FactBase()

    def test_add_and_lookup(self):
        fact = self.facts.add(FactKind.CONSTANT, Binding('x', 'f'), 3)
        assert self.facts.constant(Binding('x', 'f')) is fact
        assert fact.fact_id in self.facts

    def test_site_facts_are_separate(self):
        self.facts.add(FactKind.CONSTANT, Binding('x', 'f'), 1, site=10)
        self.facts.add(FactKind.CONSTANT, Binding('x', 'f'), 2, site=11)
        assert self.facts.constant_at(10).value == 1
        assert self.facts.constant_at(11).value == 2
        assert self.facts.constant(Binding('x', 'f')) is None

    def test_replacing_a_fact_drops_the_old_one(self):
        old = self.facts.add(FactKind.TYPE, Binding('x', 'f'), int, site=5)
        new = self.facts.add(FactKind.TYPE, Binding('x', 'f'), float, site=5)
        assert old.fact_id not in self.facts
        assert self.facts.type_at(5) is new

    def test_invalidate(self):
        self.facts.add(FactKind.CONSTANT, Binding('x', 'f'), 1, site=1)
        self.facts.add(FactKind.TYPE, Binding('x', 'f'), int, site=1)
        self.facts.add(FactKind.PURE, 'len')
        assert self.facts.invalidate_name('f', 'x') == 2
        assert self.facts.constant_at(1) is None
        assert self.facts.pure('len') is not None

    def test_absent_fact_is_none(self):
        assert self.facts.range_at(99) is None
        assert self.facts.pure('anything') is None

    def test_fact_str(self):
        fact = self.facts.add(FactKind.RANGE, Binding('i', 'f'), Bounds(0, 9, 10), site=4)
        assert str(fact) == 'RangeBounds(i@f in [0, 9]) at #4'


# ---------- Scopes ----------

class TestScopes:
    def test_qualnames(self):
        tree = ast.parse(textwrap.dedent("""
            def outer():
                def inner():
                    pass
            class C:
                def m(self):
                    pass
        """))
        module = ScopeCollector().collect(tree)
        names = {s.qualname for s in module.walk()}
        assert {'<module>', 'outer', 'outer.<locals>.inner', 'C', 'C.m'} <= names

    def test_module_body_is_collected_into_module_scope(self):
        module = ScopeCollector().collect(ast.parse('x = 1\nprint(x)\ndef f():\n    pass'))
        assert module.qualname == '<module>'
        assert module.store_count('x') == 1
        assert 'print' in module.reads
        assert [child.qualname for child in module.children] == ['f']

    def test_captured_names(self):
        _, facts = analyze("""
            def outer():
                x = 1
                def inner():
                    return x
                return inner
        """)
        assert 'x' in scope_named(facts, 'outer').captured

    def test_nonlocal_marks_mutation(self):
        _, facts = analyze("""
            def outer():
                x = 1
                def inner():
                    nonlocal x
                    x = 2
                inner()
                return x
        """)
        assert 'x' in scope_named(facts, 'outer').mutated_by_children

    def test_dynamic_scope(self):
        _, facts = analyze("""
            def f():
                x = 1
                return locals()
        """)
        assert scope_named(facts, 'f').dynamic
        assert not facts.module_scope.dynamic

    def test_exec_makes_module_dynamic(self):
        _, facts = analyze("""
            def f():
                exec('y = 1')
        """)
        assert facts.module_scope.dynamic

    def test_stable_globals(self):
        _, facts = analyze("""
            A = 1
            B = 1
            B = 2
            def f():
                global C
                C = 3
        """)
        module = facts.module_scope
        assert is_stable_global(module, 'A')
        assert not is_stable_global(module, 'B')
        assert not is_stable_global(module, 'C')
        assert is_stable_global(module, 'len')

    def test_bound_before(self):
        _, facts = analyze("""
            def early():
                return LATE
            LATE = 1
            def late():
                return LATE
        """)
        assert not bound_before(scope_named(facts, 'early'), 'LATE')
        assert bound_before(scope_named(facts, 'late'), 'LATE')
        assert bound_before(scope_named(facts, 'late'), 'len')
        assert not bound_before(scope_named(facts, 'late'), 'not_a_name_anywhere')

    def test_alias_recorded(self):
        _, facts = analyze("""
            def f(xs):
                _g_len = len
                return _g_len(xs)
        """)
        assert scope_named(facts, 'f').aliases == {'_g_len': 'len'}

    def test_external_globals_are_unstable(self):
        _, facts = analyze("""
            def f():
                return helper()
        """, external=['helper'])
        assert not is_stable_global(facts.module_scope, 'helper')


# ---------- Constant Propagation ----------

class TestConstantPropagation:
    def test_module_constant(self):
        tree, facts = analyze("""
            X = 2 * 3
            def f():
                return X
        """)
        assert facts.constant(Binding('X', '<module>')).value == 6
        (read,) = reads_of(tree, 'X')
        assert facts.constant_at(read._astpipe_id).value == 6

    def test_reassigned_binding_is_not_constant(self):
        tree, facts = analyze("""
            def f(c):
                y = 1
                if c:
                    y = 2
                return y
        """)
        assert facts.constant(Binding('y', 'f')) is None
        (read,) = reads_of(tree, 'y')
        assert facts.constant_at(read._astpipe_id) is None

    def test_site_constants_through_straight_line_code(self):
        tree, facts = analyze("""
            def f():
                s = 0
                s += 5
                s += 10
                return s
        """)
        (read,) = reads_of(tree, 's')
        assert facts.constant_at(read._astpipe_id).value == 15

    def test_read_before_definition_is_not_constant(self):
        tree, facts = analyze("""
            def f():
                return LATER
            LATER = 4
        """)
        (read,) = reads_of(tree, 'LATER')
        assert facts.constant_at(read._astpipe_id) is None

    def test_loop_kills_updated_names(self):
        tree, facts = analyze("""
            def f(n):
                s = 0
                for i in range(n):
                    s += i
                return s
        """)
        (read,) = reads_of(tree, 's')
        assert facts.constant_at(read._astpipe_id) is None

    def test_captured_local_is_not_tracked(self):
        tree, facts = analyze("""
            def f():
                x = 1
                def g():
                    return x
                x = 2
                return g()
        """)
        for read in reads_of(tree, 'x'):
            assert facts.constant_at(read._astpipe_id) is None

    def test_literal_binding_type(self):
        _, facts = analyze("""
            def f():
                ratio = 0.5
                return ratio
        """)
        assert facts.lookup(FactKind.TYPE, Binding('ratio', 'f')).value is float


# ---------- Purity ----------

class TestPurity:
    def test_builtins_are_pure(self):
        _, facts = analyze("x = 1")
        assert facts.pure('len') is not None
        assert facts.pure('range') is not None
        assert facts.pure('print') is None

    def test_rebound_builtin_is_not_pure(self):
        _, facts = analyze("""
            def len(x):
                print(x)
                return 0
        """)
        report = facts.purity['len']
        assert not report.is_pure
        assert facts.pure('len') is None

    def test_pure_function(self):
        _, facts = analyze("""
            def square(x):
                return x * x
        """)
        assert facts.pure('square') is not None
        assert facts.purity['square'].level is PurityLevel.PURE

    def test_io_is_impure(self):
        _, facts = analyze("""
            def shout(x):
                print(x)
                return x
        """)
        assert facts.pure('shout') is None
        assert 'print' in facts.purity['shout'].io_calls

    def test_global_write_is_impure(self):
        _, facts = analyze("""
            counter = 0
            def bump():
                global counter
                counter += 1
        """)
        assert facts.pure('bump') is None

    def test_impurity_propagates_through_callers(self):
        _, facts = analyze("""
            def leaf(x):
                print(x)
            def middle(x):
                leaf(x)
                return x
            def top(x):
                return middle(x)
        """)
        assert facts.pure('leaf') is None
        assert facts.pure('middle') is None
        assert facts.pure('top') is None

    def test_mutual_recursion_stays_pure(self):
        _, facts = analyze("""
            def even(n):
                return True if n == 0 else odd(n - 1)
            def odd(n):
                return False if n == 0 else even(n - 1)
        """)
        assert facts.pure('even') is not None
        assert facts.pure('odd') is not None

    def test_local_container_mutation_is_pure(self):
        _, facts = analyze("""
            def build(n):
                out = []
                out.append(n)
                return len(out)
        """)
        assert facts.pure('build') is not None

    def test_decorated_function_is_not_a_candidate(self):
        _, facts = analyze("""
            def deco(f):
                return f
            @deco
            def g(x):
                return x
        """)
        assert facts.pure('g') is None

    def test_pure_string_method(self):
        _, facts = analyze("x = 1")
        assert facts.pure('str.startswith') is not None


# ---------- Range Inference ----------

class TestRangeInference:
    def test_range_loop_facts(self):
        tree, facts = analyze("""
            def f():
                total = 0
                for i in range(2, 12, 3):
                    total += i
                return total
        """)
        loop = next(n for n in ast.walk(tree) if isinstance(n, ast.For))
        analysis = facts.loops[loop._astpipe_id]
        assert analysis.is_range_loop
        assert analysis.trip_count == 4
        assert analysis.bounds == Bounds(2, 11)
        (read,) = reads_of(tree, 'i')
        assert facts.range_at(read._astpipe_id).value.lo == 2
        assert facts.range_at(read._astpipe_id).value.hi == 11
        assert facts.type_at(read._astpipe_id).value is int

    def test_range_through_constant_name(self):
        tree, facts = analyze("""
            def f():
                n = 5
                for i in range(n):
                    pass
        """)
        loop = next(n for n in ast.walk(tree) if isinstance(n, ast.For))
        assert facts.loops[loop._astpipe_id].trip_count == 5

    def test_accumulator_bounds(self):
        tree, facts = analyze("""
            def f():
                s = 0
                for i in range(10):
                    s += i
                return s
        """)
        after = reads_of(tree, 's')[-1]
        bounds = facts.range_at(after._astpipe_id).value
        assert (bounds.lo, bounds.hi) == (0, 90)

    def test_literal_sequence(self):
        tree, facts = analyze("""
            def f():
                for name in ('a', 'b'):
                    print(name)
        """)
        loop = next(n for n in ast.walk(tree) if isinstance(n, ast.For))
        analysis = facts.loops[loop._astpipe_id]
        assert not analysis.is_range_loop
        assert analysis.sequence == ('a', 'b')

    def test_unknown_bound_gives_no_facts(self):
        tree, facts = analyze("""
            def f(n):
                for i in range(n):
                    print(i)
        """)
        loop = next(n for n in ast.walk(tree) if isinstance(n, ast.For))
        assert loop._astpipe_id not in facts.loops
        (read,) = reads_of(tree, 'i')
        assert facts.range_at(read._astpipe_id) is None

    def test_loop_variable_rebound_in_body(self):
        tree, facts = analyze("""
            def f():
                for i in range(3):
                    i = i * 2
                    print(i)
        """)
        for read in reads_of(tree, 'i'):
            assert facts.range_at(read._astpipe_id) is None

    @pytest.mark.parametrize('source', [
        'def f():\n    for i in range(0):\n        pass',
        'def f():\n    for i in range(5, 0):\n        pass',
    ])
    def test_empty_range(self, source):
        tree, facts = analyze(source)
        loop = next(n for n in ast.walk(tree) if isinstance(n, ast.For))
        assert facts.loops[loop._astpipe_id].trip_count == 0


class TestAnalyzerIsReadOnly:
    def test_tree_unchanged(self):
        source = textwrap.dedent("""
            X = 3
            def f(a):
                for i in range(4):
                    a += i * X
                return a
        """)
        tree = ast.parse(source)
        before = ast.dump(tree)
        Analyzer().run(tree)
        assert ast.dump(tree) == before
