"""
Tree Helpers
============

Identity, provenance and structural checks for the ``ast`` trees the
pipeline rewrites.

Every node gets a stable integer id stored outside its ``_fields`` so
``ast.dump`` (and therefore structural comparison) never sees it.
``copy.deepcopy`` keeps ids, which is what lets facts computed on one copy
of a tree address the same nodes in the next copy. Nodes that are
synthesized, or duplicated by inlining and unrolling, are re-stamped with
fresh ids and remember the id they came from.
"""

import ast
import builtins
import copy
import itertools
from typing import Iterator, List, Optional, Set

from astpipe.pipeline.errors import MalformedTree

_ID_ATTR = '_astpipe_id'
_ORIGIN_ATTR = '_astpipe_origin'

_ids = itertools.count(1)

# ast.parse shares these instances between nodes
_SHARED_KINDS = (
    ast.expr_context, ast.operator, ast.unaryop, ast.cmpop, ast.boolop,
)

SAFE_CONSTANT_TYPES = (int, float, complex, str, bytes, bool, type(None))

BUILTIN_NAMES: Set[str] = set(dir(builtins))


def _is_shared(node: ast.AST) -> bool:
    return isinstance(node, _SHARED_KINDS)


def iter_nodes(tree: ast.AST) -> Iterator[ast.AST]:
    """Yield every owned node of *tree* (contexts and operators excluded)."""
    for node in ast.walk(tree):
        if not _is_shared(node):
            yield node


def node_id(node: ast.AST) -> int:
    """Return the stable id of *node*, assigning one if it has none."""
    nid = getattr(node, _ID_ATTR, None)
    if nid is None:
        nid = next(_ids)
        setattr(node, _ID_ATTR, nid)
    return nid


def origin_of(node: ast.AST) -> Optional[int]:
    """Id of the source node a synthesized node was derived from, if any."""
    return getattr(node, _ORIGIN_ATTR, None)


def stamp_ids(tree: ast.AST) -> ast.AST:
    for node in iter_nodes(tree):
        node_id(node)
    return tree


def synthesize(node: ast.AST, origin: Optional[ast.AST] = None) -> ast.AST:
    """Give a freshly built subtree new ids and point it at *origin*."""
    origin_id = node_id(origin) if origin is not None else None
    for child in iter_nodes(node):
        setattr(child, _ID_ATTR, next(_ids))
        if origin_id is not None and getattr(child, _ORIGIN_ATTR, None) is None:
            setattr(child, _ORIGIN_ATTR, origin_id)
    if origin is not None:
        ast.copy_location(node, origin)
    return node


def duplicate(node: ast.AST) -> ast.AST:
    """
    Deep-copy *node* for placement at a second position in the tree.

    Each copied node gets a fresh id and records the id of the node it
    was copied from.
    """
    clone = copy.deepcopy(node)
    for original, copied in zip(iter_nodes(node), iter_nodes(clone)):
        setattr(copied, _ORIGIN_ATTR, node_id(original))
        setattr(copied, _ID_ATTR, next(_ids))
    return clone


def constant(value, origin: Optional[ast.AST] = None) -> ast.Constant:
    return synthesize(ast.Constant(value=value), origin)


def load(name: str, origin: Optional[ast.AST] = None) -> ast.Name:
    return synthesize(ast.Name(id=name, ctx=ast.Load()), origin)


def store(name: str, origin: Optional[ast.AST] = None) -> ast.Name:
    return synthesize(ast.Name(id=name, ctx=ast.Store()), origin)


def assign(name: str, value: ast.expr, origin: Optional[ast.AST] = None) -> ast.Assign:
    target = store(name, origin)
    stmt = ast.Assign(targets=[target], value=value)
    setattr(stmt, _ID_ATTR, next(_ids))
    if origin is not None:
        setattr(stmt, _ORIGIN_ATTR, node_id(origin))
        ast.copy_location(stmt, origin)
    return stmt


def is_safe_constant(value) -> bool:
    """Immutable values that may be embedded as ``ast.Constant``."""
    if isinstance(value, tuple):
        return all(is_safe_constant(v) for v in value)
    return isinstance(value, SAFE_CONSTANT_TYPES)


def count_nodes(node: ast.AST) -> int:
    return sum(1 for _ in iter_nodes(node))


def same_tree(a: ast.AST, b: ast.AST) -> bool:
    return ast.dump(a) == ast.dump(b)


def names_in(tree: ast.AST) -> Set[str]:
    """Every identifier used as a variable, parameter or definition name."""
    names = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            names.add(node.id)
        elif isinstance(node, ast.arg):
            names.add(node.arg)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.alias):
            names.add((node.asname or node.name).split('.')[0])
    return names


def fresh_name(prefix: str, taken: Set[str]) -> str:
    """Return ``prefix<N>`` not present in *taken*, and reserve it."""
    for n in itertools.count():
        candidate = f'{prefix}{n}'
        if candidate not in taken:
            taken.add(candidate)
            return candidate


def free_names(tree: ast.AST) -> Set[str]:
    """
    Names read somewhere in *tree* but bound nowhere in it.

    Used as a post-condition: a rewrite may remove free names but must
    never introduce one.
    """
    loaded = set()
    bound = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            if isinstance(node.ctx, ast.Load):
                loaded.add(node.id)
            else:
                bound.add(node.id)
        elif isinstance(node, ast.arg):
            bound.add(node.arg)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            bound.add(node.name)
        elif isinstance(node, ast.alias):
            bound.add((node.asname or node.name).split('.')[0])
        elif isinstance(node, ast.ExceptHandler) and node.name:
            bound.add(node.name)
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            bound.update(node.names)
    return loaded - bound


def as_module(tree: ast.AST) -> ast.Module:
    if isinstance(tree, ast.Module):
        return tree
    module = ast.Module(body=[tree], type_ignores=[])
    return module


def validate_tree(tree: ast.AST) -> None:
    """
    Raise ``MalformedTree`` unless *tree* is a well-formed, compilable
    module or function definition with strict parent-to-child ownership.
    """
    if not isinstance(tree, (ast.Module, ast.FunctionDef, ast.AsyncFunctionDef)):
        raise MalformedTree(
            f'expected a Module or FunctionDef, got {type(tree).__name__}'
        )

    seen = set()
    stack: List[ast.AST] = [tree]
    while stack:
        node = stack.pop()
        if id(node) in seen:
            raise MalformedTree(
                f'{type(node).__name__} node is reachable more than once',
                getattr(node, _ID_ATTR, None),
            )
        seen.add(id(node))
        for field_name, value in ast.iter_fields(node):
            children = value if isinstance(value, list) else [value]
            for child in children:
                if isinstance(child, ast.AST):
                    if not _is_shared(child):
                        stack.append(child)
                elif isinstance(value, list) and child is not None and not isinstance(child, str):
                    raise MalformedTree(
                        f'{type(node).__name__}.{field_name} holds a non-node '
                        f'{type(child).__name__}',
                        getattr(node, _ID_ATTR, None),
                    )

    probe = copy.deepcopy(as_module(tree))
    ast.fix_missing_locations(probe)
    try:
        compile(probe, '<astpipe-validate>', 'exec')
    except (SyntaxError, ValueError, TypeError) as e:
        raise MalformedTree(f'tree does not compile: {e}', getattr(tree, _ID_ATTR, None)) from e
