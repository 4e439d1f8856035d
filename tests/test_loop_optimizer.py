"""
Tests for the loop passes: invariant hoisting and unrolling.

Validates:
  - Invariant attribute chains and pure calls move before the loop
  - Nothing moves out of conditional positions or non-quiet loops
  - Full and partial unrolling preserve results and the loop variable
  - Loops the unroller cannot prove safe are skipped with a reason
"""

import ast
import textwrap

import pytest

from astpipe.pipeline.config import PipelineConfig
from astpipe.pipeline.driver import PipelineDriver


def run_passes(source, *passes, **options):
    config = PipelineConfig(enabled_passes=passes, **options)
    return PipelineDriver(config).run(ast.parse(textwrap.dedent(source)))


def load(tree, name):
    namespace = {}
    exec(compile(ast.fix_missing_locations(tree), '<optimized>', 'exec'), namespace)
    return namespace[name]


def load_original(source, name):
    namespace = {}
    exec(textwrap.dedent(source), namespace)
    return namespace[name]


def expected(source):
    return ast.unparse(ast.parse(textwrap.dedent(source)))


class Recorder:
    """Counts attribute lookups of ``cleanup`` and ``size``."""

    def __init__(self, size=3):
        self.lookups = 0
        self.seen = []
        self._size = size

    def __getattribute__(self, name):
        if name in ('cleanup', 'size'):
            object.__getattribute__(self, '__dict__')['lookups'] += 1
        return object.__getattribute__(self, name)

    def cleanup(self, item):
        self.seen.append(item)

    @property
    def size(self):
        return self._size


# ---------- Hoisting ----------

class TestHoist:
    def test_method_lookup(self):
        source = """
            def process(obj, items):
                for item in items:
                    obj.cleanup(item)
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected("""
            def process(obj, items):
                if items:
                    _hoisted_0 = obj.cleanup
                    for item in items:
                        _hoisted_0(item)
        """)

    def test_method_lookup_happens_once(self):
        source = """
            def process(obj, items):
                for item in items:
                    obj.cleanup(item)
        """
        process = load(run_passes(source, 'hoist').tree, 'process')
        for n in (1, 5, 50):
            obj = Recorder()
            process(obj, list(range(n)))
            assert obj.lookups == 1
            assert obj.seen == list(range(n))
        obj = Recorder()
        process(obj, [])
        assert obj.lookups == 0

    def test_attribute_value_in_quiet_loop(self):
        source = """
            def total(obj, items):
                t = 0
                for item in items:
                    t += obj.size + item
                return t
        """
        result = run_passes(source, 'hoist')
        assert '_hoisted_0 = obj.size' in result.source
        obj = Recorder(size=10)
        assert load(result.tree, 'total')(obj, [1, 2, 3]) == 36
        assert obj.lookups == 1

    def test_attribute_value_in_noisy_loop_stays(self):
        source = """
            def total(obj, items, log):
                for item in items:
                    log(obj.size)
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected(source)

    def test_pure_call_with_invariant_argument(self):
        source = """
            def f(items, name):
                n = 0
                for x in items:
                    n += len(name) + x
                return n
        """
        result = run_passes(source, 'hoist')
        assert '_hoisted_0 = len(name)' in result.source
        assert load(result.tree, 'f')([1, 2], 'abc') == load_original(source, 'f')([1, 2], 'abc')

    def test_rebound_root_stays(self):
        source = """
            def f(objs):
                for obj in objs:
                    obj.cleanup(1)
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected(source)

    def test_conditional_position_stays(self):
        source = """
            def f(obj, items):
                for item in items:
                    if item:
                        obj.cleanup(item)
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected(source)

    def test_short_circuit_operand_stays(self):
        source = """
            def f(obj, items):
                out = 0
                for item in items:
                    out += item and obj.size
                return out
        """
        result = run_passes(source, 'hoist')
        assert '_hoisted' not in result.source

    def test_identical_expressions_share_a_local(self):
        result = run_passes("""
            def f(obj, items):
                for item in items:
                    obj.cleanup(item)
                    obj.cleanup(-item)
        """, 'hoist')
        assert result.source.count('= obj.cleanup') == 1
        assert result.source.count('_hoisted_0(') == 2

    def test_while_test(self):
        source = """
            def drain(obj, stack):
                while len(stack) < obj.size:
                    stack.append(0)
                return stack
        """
        result = run_passes(source, 'hoist')
        assert load(result.tree, 'drain')(Recorder(size=4), []) == [0, 0, 0, 0]

    def test_module_level_loop_stays(self):
        source = """
            for item in items:
                obj.cleanup(item)
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected(source)

    def test_generator_stays(self):
        source = """
            def gen(obj, items):
                for item in items:
                    yield obj.cleanup(item)
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected(source)

    def test_chain_with_reassigned_link_stays(self):
        source = """
            class Box:
                def __init__(self, value):
                    self.value = value
                def get(self):
                    return self.value
            class Holder:
                def __init__(self):
                    self.b = Box(0)
                def swap(self, value):
                    self.b = Box(value)
            def f(a):
                out = []
                for k in range(3):
                    out.append(a.b.get())
                    a.swap(k + 1)
                return out
        """
        result = run_passes(source, 'hoist')
        assert 'a.b.get()' in result.source
        holder = load(result.tree, 'Holder')
        assert load(result.tree, 'f')(holder()) == [0, 1, 2]
        assert load_original(source, 'f')(load_original(source, 'Holder')()) == [0, 1, 2]

    def test_zero_trip_loop_evaluates_nothing(self):
        source = """
            def f(obj, items):
                n = 0
                for x in items:
                    n += obj.size
                return n
        """
        result = run_passes(source, 'hoist')
        assert '_hoisted_0 = obj.size' in result.source
        f = load(result.tree, 'f')
        assert f(None, []) == load_original(source, 'f')(None, []) == 0
        obj = Recorder(size=2)
        assert f(obj, [1, 2, 3]) == 6
        assert obj.lookups == 1

    def test_empty_static_range_stays(self):
        source = """
            def f(obj):
                n = 0
                for i in range(0):
                    n += obj.size
                return n
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected(source)
        assert load(result.tree, 'f')(None) == 0

    def test_computed_iterable_stays(self):
        source = """
            def f(obj, items):
                for item in list(items):
                    obj.cleanup(item)
        """
        result = run_passes(source, 'hoist')
        assert result.source == expected(source)

    def test_method_reassigned_on_instance_stays(self):
        source = """
            class Counter:
                def __init__(self):
                    self.n = 0
                def step(self):
                    self.n += 1
                    self.step = self.big_step
                def big_step(self):
                    self.n += 100
            def run(c, items):
                for _ in items:
                    c.step()
                return c.n
        """
        result = run_passes(source, 'hoist')
        assert '_hoisted' not in result.source
        counter = load(result.tree, 'Counter')
        assert load(result.tree, 'run')(counter(), [1, 2, 3]) == 201

    def test_setattr_anywhere_blocks_method_lookup(self):
        source = """
            def patch(obj, name, value):
                setattr(obj, name, value)
            def f(obj, items):
                for item in items:
                    obj.cleanup(item)
        """
        result = run_passes(source, 'hoist')
        assert '_hoisted' not in result.source


# ---------- Unrolling ----------

class TestUnroll:
    def test_full_unroll(self):
        result = run_passes("""
            def f():
                s = 0
                for i in range(3):
                    s += i
                return s
        """, 'unroll')
        assert result.source == expected("""
            def f():
                s = 0
                i = 0
                s += i
                i = 1
                s += i
                i = 2
                s += i
                return s
        """)
        assert load(result.tree, 'f')() == 3

    def test_partial_unroll(self):
        source = """
            def f():
                s = 0
                for i in range(10):
                    s += i * i
                return s, i
        """
        result = run_passes(source, 'unroll', full_unroll_limit=2, unroll_factor=4)
        assert 'for _unroll_0 in range(0, 8, 4):' in result.source
        assert 'i = 9' in result.source
        assert load(result.tree, 'f')() == load_original(source, 'f')() == (285, 9)

    def test_partial_unroll_with_step(self):
        source = """
            def f():
                out = []
                for i in range(3, 40, 3):
                    out.append(i)
                return out, i
        """
        result = run_passes(source, 'unroll', full_unroll_limit=0, unroll_factor=3)
        assert '_unroll_' in result.source
        assert load(result.tree, 'f')() == load_original(source, 'f')()

    def test_partial_unroll_is_not_repeated(self):
        source = """
            def f():
                s = 0
                for i in range(100):
                    s += i
                return s
        """
        result = run_passes(source, 'unroll', full_unroll_limit=4, unroll_factor=4)
        assert result.converged
        assert result.source.count('for ') == 1

    def test_literal_sequence(self):
        source = """
            def f():
                out = []
                for name in ('a', 'b'):
                    out.append(name.upper())
                return out
        """
        result = run_passes(source, 'unroll')
        assert 'for ' not in result.source
        assert "name = 'b'" in result.source
        assert load(result.tree, 'f')() == ['A', 'B']

    def test_loop_variable_survives(self):
        source = """
            def f():
                for i in range(4):
                    pass
                return i
        """
        result = run_passes(source, 'unroll')
        assert load(result.tree, 'f')() == 3

    def test_empty_range(self):
        source = """
            def f():
                s = 7
                for i in range(0):
                    s += 1
                return s
        """
        result = run_passes(source, 'unroll')
        assert 'for ' not in result.source
        assert load(result.tree, 'f')() == 7

    def test_temporaries_are_renamed(self):
        source = """
            def f():
                out = []
                for i in range(3):
                    t = i * 2
                    out.append(t)
                return out, t
        """
        result = run_passes(source, 'unroll')
        assert 't__u0 = i * 2' in result.source
        assert load(result.tree, 'f')() == load_original(source, 'f')() == ([0, 2, 4], 4)

    @pytest.mark.parametrize('body, reason', [
        ('if i == 2:\n            break\n        s += i', 'break'),
        ('if i == 2:\n            continue\n        s += i', 'break or continue'),
    ])
    def test_escaping_control_flow(self, body, reason):
        source = f"""
def f():
    s = 0
    for i in range(5):
        {body}
    return s
"""
        result = run_passes(source, 'unroll')
        assert 'for i in range(5)' in result.source
        assert any(reason in r.reason for r in result.log.skipped())

    def test_break_in_nested_loop_is_fine(self):
        source = """
            def f():
                s = 0
                for i in range(3):
                    while True:
                        s += i
                        break
                return s
        """
        result = run_passes(source, 'unroll')
        assert 'for i in range(3)' not in result.source
        assert load(result.tree, 'f')() == 3

    def test_else_clause(self):
        source = """
            def f():
                for i in range(2):
                    pass
                else:
                    return 1
        """
        result = run_passes(source, 'unroll')
        assert result.source == expected(source)

    def test_node_budget(self):
        source = """
            def f():
                s = 0
                for i in range(10):
                    s += i * i + i
                return s
        """
        result = run_passes(source, 'unroll', max_unrolled_nodes=20)
        assert 'for i in range(10)' in result.source
        assert any('max_unrolled_nodes' in r.reason for r in result.log.skipped())

    def test_unknown_trip_count(self):
        source = """
            def f(n):
                s = 0
                for i in range(n):
                    s += i
                return s
        """
        result = run_passes(source, 'unroll')
        assert result.source == expected(source)

    def test_shadowed_range(self):
        source = """
            def range(n):
                return [0]
            def f():
                s = 0
                for i in range(3):
                    s += 1
                return s
        """
        result = run_passes(source, 'unroll')
        assert load(result.tree, 'f')() == 1
