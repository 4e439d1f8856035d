"""
Tests for the command-line interface.

Validates:
  - Optimized source goes to stdout or to -o
  - Exit codes for success, malformed input, internal errors and budgets
  - --dump-log and --disable-pass
"""

import ast

import pytest

from astpipe.cli import EXIT_BUDGET, EXIT_INTERNAL, EXIT_MALFORMED, EXIT_OK, build_parser, main
from astpipe.compiler.rewrite import RewritePass
from astpipe.pipeline import driver

SUM_LOOP = """\
def f():
    s = 0
    for i in range(10):
        s += i
    return s
"""


class CrashingDeadCode(RewritePass):
    name = 'dead_code'

    def rewrite(self, tree, facts, gate):
        raise RuntimeError('crash')


@pytest.fixture
def program(tmp_path):
    path = tmp_path / 'prog.py'
    path.write_text(SUM_LOOP, encoding='utf-8')
    return path


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(['optimize', 'x.py'])
        assert args.max_iterations == 10
        assert args.unroll_factor == 4
        assert args.disable_pass == []
        assert not args.dump_log

    def test_unknown_pass_is_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['optimize', 'x.py', '--disable-pass', 'nope'])

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestOptimizeCommand:
    def test_stdout(self, program, capsys):
        assert main(['optimize', str(program)]) == EXIT_OK
        out, err = capsys.readouterr()
        assert out == 'def f():\n    return 45\n'
        assert err == ''

    def test_output_file(self, program, tmp_path, capsys):
        target = tmp_path / 'out.py'
        assert main(['optimize', str(program), '-o', str(target)]) == EXIT_OK
        assert target.read_text(encoding='utf-8') == 'def f():\n    return 45\n'
        assert capsys.readouterr().out == ''

    def test_dump_log(self, program, capsys):
        assert main(['optimize', str(program), '--dump-log']) == EXIT_OK
        err = capsys.readouterr().err
        assert 'unroll' in err
        assert 'summary:' in err
        assert 'iterations:' in err

    def test_disable_pass(self, program, capsys):
        assert main(['optimize', str(program), '--disable-pass', 'unroll']) == EXIT_OK
        out = capsys.readouterr().out
        assert 'for i in range(10)' in out
        ast.parse(out)

    def test_missing_file(self, tmp_path, capsys):
        assert main(['optimize', str(tmp_path / 'missing.py')]) == EXIT_MALFORMED
        assert 'cannot read' in capsys.readouterr().err

    def test_syntax_error(self, tmp_path, capsys):
        path = tmp_path / 'bad.py'
        path.write_text('def f(:\n    pass\n', encoding='utf-8')
        assert main(['optimize', str(path)]) == EXIT_MALFORMED
        assert 'syntax error' in capsys.readouterr().err

    def test_invalid_unroll_factor(self, program, capsys):
        assert main(['optimize', str(program), '--unroll-factor', '1']) == EXIT_MALFORMED
        assert 'invalid configuration' in capsys.readouterr().err

    def test_iteration_budget(self, program, capsys):
        assert main(['optimize', str(program), '--max-iterations', '1']) == EXIT_BUDGET
        out, err = capsys.readouterr()
        ast.parse(out)
        assert 'warning' in err

    def test_internal_error(self, program, capsys, monkeypatch):
        monkeypatch.setitem(driver.PASS_REGISTRY, 'dead_code', CrashingDeadCode)
        assert main(['optimize', str(program)]) == EXIT_INTERNAL
        out, err = capsys.readouterr()
        assert out == ''
        assert 'dead_code' in err
