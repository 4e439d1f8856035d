"""
Function API
============

Optimize a live Python function: its source is parsed, run through the
pipeline, and compiled back against the function's own module globals.

Usage:
    >>> from astpipe import optimize
    >>> @optimize
    ... def total():
    ...     s = 0
    ...     for i in range(10):
    ...         s += i
    ...     return s
    >>> total.__astpipe_result__.source
    'def total():\\n    return 45'
"""

import ast
import functools
import inspect
import logging
import textwrap
from typing import Callable, Optional, Set

from astpipe.pipeline.config import PipelineConfig
from astpipe.pipeline.driver import PipelineDriver, PipelineResult

logger = logging.getLogger(__name__)


def _global_names(code) -> Set[str]:
    """Every global name *code* and its nested code objects can read."""
    names = set(code.co_names)
    for const in code.co_consts:
        if inspect.iscode(const):
            names |= _global_names(const)
    return names


def optimize_source(func: Callable, config: Optional[PipelineConfig] = None) -> PipelineResult:
    """Run the pipeline over *func*'s source without compiling the result."""
    source = textwrap.dedent(inspect.getsource(func))
    tree = ast.parse(source)
    funcdef = tree.body[0]
    if not isinstance(funcdef, (ast.FunctionDef, ast.AsyncFunctionDef)):
        raise TypeError(f'{func!r} is not defined by a def statement')
    # The decorators already ran; re-applying them would recurse into @optimize
    funcdef.decorator_list = []
    external = _global_names(func.__code__) & set(func.__globals__)
    return PipelineDriver(config, external_globals=external).run(funcdef)


def optimize_function(func: Callable, config: Optional[PipelineConfig] = None) -> Callable:
    """
    Return an optimized copy of *func*.

    The optimized function shares ``func.__globals__``, so later changes
    to module globals stay visible to it. Closures cannot be recompiled
    on their own and are returned unchanged.
    """
    if func.__code__.co_freevars:
        logger.warning("%s closes over %s; left unoptimized", func.__qualname__,
                       ', '.join(func.__code__.co_freevars))
        func.__astpipe_result__ = None
        return func

    result = optimize_source(func, config)
    module = ast.Module(body=[result.tree], type_ignores=[])
    ast.fix_missing_locations(module)
    code = compile(module, f'<astpipe-optimized:{func.__name__}>', 'exec')

    namespace = {}
    exec(code, func.__globals__, namespace)
    optimized = namespace[func.__name__]
    optimized.__defaults__ = func.__defaults__
    optimized.__kwdefaults__ = func.__kwdefaults__
    functools.update_wrapper(optimized, func, updated=())
    optimized.__astpipe_original__ = func
    optimized.__astpipe_result__ = result
    return optimized


def optimize(func: Optional[Callable] = None, *, config: Optional[PipelineConfig] = None):
    """
    Decorator form of ``optimize_function``.

    Usage:
        @optimize
        def f(): ...

        @optimize(config=PipelineConfig(max_iterations=3))
        def g(): ...
    """
    if func is None:
        return lambda f: optimize_function(f, config)
    return optimize_function(func, config)
