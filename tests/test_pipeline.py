"""
Tests for the pipeline: configuration, gatekeeper, rewrite log and driver.

Validates:
  - Config validation and pass selection
  - Gatekeeper admission, skipping and stale-fact detection
  - Fixed-point iteration, budgets and the caller's tree left untouched
  - Atomicity: a misbehaving pass aborts the run with the pre-pass tree
  - Idempotence and conservative behaviour on code with no facts
"""

import ast
import textwrap

import pytest

from astpipe.analysis.facts import FactBase, FactKind
from astpipe.compiler.constant_folder import ConstantFoldPass
from astpipe.compiler.rewrite import RewriteLog, RewritePass, RewriteRecord, RewriteStatus
from astpipe.compiler.tree import stamp_ids
from astpipe.pipeline.config import PASS_ORDER, PipelineConfig
from astpipe.pipeline.driver import PipelineDriver, PipelineState, optimize_tree
from astpipe.pipeline.errors import (
    InternalInvariantViolation, IterationBudgetExceeded, MalformedTree, OptimizerError,
    UnprovablePrecondition,
)
from astpipe.pipeline.gatekeeper import Gatekeeper, holds, requires_fact


def parse(source):
    return ast.parse(textwrap.dedent(source))


SUM_LOOP = """
    def f():
        s = 0
        for i in range(10):
            s += i
        return s
"""


# ---------- Test Passes ----------

class RaisingPass(RewritePass):
    name = 'raising'

    def rewrite(self, tree, facts, gate):
        tree.body.clear()
        raise RuntimeError('boom')


class FreeNamePass(RewritePass):
    name = 'free_name'

    def rewrite(self, tree, facts, gate):
        tree.body.append(ast.Expr(value=ast.Name(id='undefined_thing', ctx=ast.Load())))
        gate.changed = True


class InvalidTreePass(RewritePass):
    name = 'invalid'

    def rewrite(self, tree, facts, gate):
        tree.body.append(ast.Return(value=None))
        gate.changed = True


# ---------- Config ----------

class TestPipelineConfig:
    def test_defaults(self):
        config = PipelineConfig()
        assert config.max_iterations == 10
        assert config.unroll_factor == 4
        assert config.inline_size_budget == 40
        assert config.enabled_passes == PASS_ORDER
        assert config.time_budget is None

    @pytest.mark.parametrize('changes', [
        {'max_iterations': 0},
        {'max_iterations': -1},
        {'unroll_factor': 1},
        {'inline_size_budget': 0},
        {'max_unrolled_nodes': 0},
        {'full_unroll_limit': -1},
        {'time_budget': 0},
        {'max_iterations': True},
        {'enabled_passes': ('constant_fold', 'no_such_pass')},
        {'enabled_passes': ('constant_fold', 'constant_fold')},
    ])
    def test_invalid_values(self, changes):
        with pytest.raises(ValueError):
            PipelineConfig(**changes)

    def test_ordered_passes_follow_declared_order(self):
        config = PipelineConfig(enabled_passes=['algebraic_simplify', 'inline'])
        assert config.ordered_passes() == ('inline', 'algebraic_simplify')

    def test_without(self):
        config = PipelineConfig().without('unroll', 'hoist')
        assert not config.is_enabled('unroll')
        assert not config.is_enabled('hoist')
        assert config.is_enabled('inline')
        with pytest.raises(ValueError):
            config.without('bogus')

    def test_replace_validates(self):
        assert PipelineConfig().replace(unroll_factor=8).unroll_factor == 8
        with pytest.raises(ValueError):
            PipelineConfig().replace(unroll_factor=0)

    def test_from_mapping(self):
        config = PipelineConfig.from_mapping({'max_iterations': 3, 'enabled_passes': ['dead_code']})
        assert config.max_iterations == 3
        assert config.enabled_passes == ('dead_code',)
        with pytest.raises(ValueError, match='unknown config key'):
            PipelineConfig.from_mapping({'max_iteration': 3})


# ---------- Gatekeeper ----------

class TestGatekeeper:
    def setup_method(self):
        self.facts = FactBase()
        self.node = stamp_ids(ast.parse('len(x)')).body[0]
        self.gate = Gatekeeper(self.facts, iteration=2)
        self.gate.begin('test')

    def test_admit_returns_justification(self):
        fact = self.facts.add(FactKind.PURE, 'len')
        proof = self.gate.admit('test', self.node, [
            requires_fact('len is pure', lambda f: f.pure('len')),
            holds('always', lambda f: True),
        ])
        assert proof == (fact.fact_id,)
        assert not self.gate.records

    def test_missing_fact_is_a_skip(self):
        proof = self.gate.admit('test', self.node, [
            requires_fact('len is pure', lambda f: f.pure('len')),
        ])
        assert proof is None
        (record,) = self.gate.records
        assert record.status is RewriteStatus.SKIPPED
        assert record.iteration == 2
        assert 'len is pure' in record.reason
        assert not self.gate.changed

    def test_first_failure_stops_checking(self):
        checked = []
        self.gate.admit('test', self.node, [
            holds('first', lambda f: False),
            holds('second', lambda f: checked.append(True) or True),
        ])
        assert checked == []
        assert self.gate.records[0].reason.startswith('first')

    def test_stale_fact_is_a_skip(self):
        fact = self.facts.add(FactKind.PURE, 'len')
        self.facts.invalidate('len')
        proof = self.gate.admit('test', self.node, [
            requires_fact('len is pure', lambda f: fact),
        ])
        assert proof is None
        assert 'invalidated' in self.gate.records[0].reason

    def test_commit(self):
        after = stamp_ids(ast.Constant(value=3))
        record = self.gate.commit('test', self.node, after, (7,), reason='folded')
        assert record.applied
        assert record.before_id == self.node._astpipe_id
        assert record.after_id == after._astpipe_id
        assert record.justification == (7,)
        assert self.gate.changed

    def test_begin_resets(self):
        self.gate.commit('test', self.node, None)
        self.gate.begin('other')
        assert self.gate.records == []
        assert not self.gate.changed


# ---------- Rewrite Log ----------

class TestRewriteLog:
    def test_queries_and_report(self):
        log = RewriteLog()
        log.append(RewriteRecord('constant_fold', 1, 2, RewriteStatus.APPLIED, (5,), 'x', 1))
        log.append(RewriteRecord('inline', 3, None, RewriteStatus.SKIPPED, (), 'recursive', 1))
        assert len(log) == 2
        assert [r.pass_name for r in log.applied()] == ['constant_fold']
        assert [r.pass_name for r in log.skipped()] == ['inline']
        assert log.summary() == {
            'constant_fold': {'applied': 1, 'skipped': 0},
            'inline': {'applied': 0, 'skipped': 1},
        }
        report = log.report()
        assert 'facts=5' in report
        assert 'recursive' in report
        assert 'summary:' in report

    def test_records_are_frozen(self):
        record = RewriteRecord('dead_code', 1, None, RewriteStatus.APPLIED)
        with pytest.raises(AttributeError):
            record.reason = 'changed'


# ---------- Errors ----------

class TestErrors:
    def test_hierarchy(self):
        for cls in (MalformedTree, UnprovablePrecondition, IterationBudgetExceeded,
                    InternalInvariantViolation):
            assert issubclass(cls, OptimizerError)

    def test_invariant_violation_carries_context(self):
        tree = ast.parse('x = 1')
        error = InternalInvariantViolation('bad', 'inline', tree, node_id=4)
        assert error.pass_name == 'inline'
        assert error.tree is tree
        assert error.node_id == 4
        assert error.message == 'bad'


# ---------- Driver ----------

class TestPipelineDriver:
    def test_fixed_point(self):
        result = PipelineDriver().run(parse(SUM_LOOP))
        assert result.converged
        assert result.warning is None
        assert result.iterations >= 2
        assert result.source == 'def f():\n    return 45'

    def test_function_def_in_function_def_out(self):
        funcdef = parse("""
            def f():
                return 2 * 3
        """).body[0]
        result = optimize_tree(funcdef)
        assert isinstance(result.tree, ast.FunctionDef)
        assert result.source == 'def f():\n    return 6'

    def test_caller_tree_is_not_mutated(self):
        tree = parse(SUM_LOOP)
        before = ast.dump(tree)
        PipelineDriver().run(tree)
        assert ast.dump(tree) == before

    def test_state(self):
        driver = PipelineDriver()
        assert driver.state is PipelineState.IDLE
        driver.run(parse('x = 1'))
        assert driver.state is PipelineState.DONE

    def test_iteration_budget(self):
        result = PipelineDriver(PipelineConfig(max_iterations=1)).run(parse(SUM_LOOP))
        assert not result.converged
        assert result.budget_exceeded
        assert isinstance(result.warning, IterationBudgetExceeded)
        assert result.warning.iterations == 1
        assert result.iterations == 1
        compile(ast.fix_missing_locations(result.tree), '<budget>', 'exec')

    def test_time_budget(self):
        result = PipelineDriver(PipelineConfig(time_budget=1e-9)).run(parse(SUM_LOOP))
        assert result.iterations == 1
        assert isinstance(result.warning, IterationBudgetExceeded)
        assert 'time budget' in str(result.warning)

    def test_no_passes(self):
        source = textwrap.dedent(SUM_LOOP)
        result = PipelineDriver(PipelineConfig(enabled_passes=())).run(ast.parse(source))
        assert result.converged
        assert result.iterations == 1
        assert result.source == ast.unparse(ast.parse(source))
        assert len(result.log) == 0

    def test_explicit_pass_list(self):
        result = PipelineDriver(passes=[ConstantFoldPass()]).run(parse("""
            def f():
                if 1 + 1 == 2:
                    return 1
        """))
        assert 'if True' in result.source

    def test_wall_time(self):
        result = PipelineDriver().run(parse('x = 1'))
        assert result.wall_time_seconds >= 0

    @pytest.mark.parametrize('tree', [
        ast.Expression(body=ast.Constant(value=1)),
        ast.Constant(value=1),
    ])
    def test_wrong_root_type(self, tree):
        with pytest.raises(MalformedTree):
            PipelineDriver().run(tree)

    def test_shared_node(self):
        name = ast.Name(id='x', ctx=ast.Load())
        tree = ast.Module(body=[ast.Expr(value=name), ast.Expr(value=name)], type_ignores=[])
        with pytest.raises(MalformedTree, match='more than once'):
            PipelineDriver().run(tree)

    def test_uncompilable_tree(self):
        tree = ast.Module(body=[ast.Return(value=None)], type_ignores=[])
        with pytest.raises(MalformedTree):
            PipelineDriver().run(tree)


class TestAtomicity:
    SOURCE = """
        def f(a):
            return a + 1
    """

    @pytest.mark.parametrize('rewrite_pass, message', [
        (RaisingPass(), 'RuntimeError'),
        (FreeNamePass(), 'undefined_thing'),
        (InvalidTreePass(), 'invalid tree'),
    ])
    def test_failed_pass_aborts_with_pre_pass_tree(self, rewrite_pass, message):
        tree = parse(self.SOURCE)
        before = ast.dump(tree)
        with pytest.raises(InternalInvariantViolation) as excinfo:
            PipelineDriver(passes=[rewrite_pass]).run(tree)
        error = excinfo.value
        assert error.pass_name == rewrite_pass.name
        assert message in str(error)
        assert ast.dump(error.tree) == before
        assert ast.dump(tree) == before

    def test_state_is_done_after_failure(self):
        driver = PipelineDriver(passes=[RaisingPass()])
        with pytest.raises(InternalInvariantViolation):
            driver.run(parse(self.SOURCE))
        assert driver.state is PipelineState.DONE

    def test_failure_after_successful_pass_keeps_its_result(self):
        tree = parse("""
            def f():
                return 2 * 3
        """)
        with pytest.raises(InternalInvariantViolation) as excinfo:
            PipelineDriver(passes=[ConstantFoldPass(), RaisingPass()]).run(tree)
        assert ast.unparse(excinfo.value.tree) == 'def f():\n    return 6'


class TestIdempotence:
    PROGRAMS = [
        SUM_LOOP,
        """
        def process(obj, items):
            for item in items:
                obj.cleanup(item)
        """,
        """
        def sq(x):
            return x * x
        def norm(a, b):
            s = sq(a) + sq(b)
            return s ** 0.5
        def f(p, q):
            return norm(p, q)
        """,
        """
        def f(data):
            out = []
            for x in data:
                out.append(len(x))
            total = 0
            for i in range(40):
                total += i * 1
            return out, total
        """,
    ]

    @pytest.mark.parametrize('source', PROGRAMS)
    def test_second_run_changes_nothing(self, source):
        first = PipelineDriver().run(parse(source))
        assert first.converged
        second = PipelineDriver().run(first.tree)
        assert second.source == first.source
        assert not second.log.applied()
        assert second.iterations == 1


class TestConservativeAbsence:
    @pytest.mark.parametrize('source', [
        """
        def f(x, y):
            return x * 1 + y
        """,
        """
        def f(obj):
            obj.count += 0
            return obj.count
        """,
        """
        def f(n):
            s = 0
            for i in range(n):
                s += i
            return s
        """,
    ])
    def test_nothing_provable_nothing_changed(self, source):
        result = PipelineDriver().run(parse(source))
        assert result.source == ast.unparse(parse(source))
        assert not result.log.applied()
