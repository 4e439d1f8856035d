"""
Scope Model
===========

Collects, for every scope of a module, which names it binds, how, and
where; which names it reads; which of its names escape into nested
scopes (closures, lambdas, comprehensions); and whether it performs
dynamic introspection that makes its bindings impossible to enumerate.

Everything here is recorded by node id, never by node reference, so the
table stays valid for any ``deepcopy`` of the analysed tree.
"""

import ast
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from astpipe.analysis.facts import Binding, BindingState
from astpipe.compiler.tree import BUILTIN_NAMES, node_id

# Calls that read or write a scope's namespace behind the compiler's back
DYNAMIC_CALLS = frozenset({
    'locals', 'vars', 'globals', 'exec', 'eval', 'dir',
    'sys._getframe', 'inspect.currentframe', 'inspect.stack',
})

# Calls that can rebind module-level names of the defining module
MODULE_MUTATING_CALLS = frozenset({'globals', 'exec', 'eval', 'vars', 'setattr', 'delattr'})


@dataclass(frozen=True)
class Site:
    """Where a name is stored or read inside its scope."""
    kind: str                  # assign, augassign, for, def, class, import, ...
    node_id: int               # the Name (or def/alias) node
    stmt_index: Optional[int]  # index of the enclosing top-level statement
    direct: bool = False       # the store *is* that top-level statement
    value_id: Optional[int] = None


@dataclass(eq=False)
class ScopeInfo:
    qualname: str
    node_id: int
    kind: str                          # module, function, class, lambda, comprehension
    parent: Optional['ScopeInfo'] = None
    params: Set[str] = field(default_factory=set)
    simple_params: bool = True         # only plain positional parameters
    stores: Dict[str, List[Site]] = field(default_factory=lambda: defaultdict(list))
    reads: Dict[str, List[Site]] = field(default_factory=lambda: defaultdict(list))
    declared_global: Set[str] = field(default_factory=set)
    declared_nonlocal: Set[str] = field(default_factory=set)
    children: List['ScopeInfo'] = field(default_factory=list)
    captured: Set[str] = field(default_factory=set)
    mutated_by_children: Set[str] = field(default_factory=set)
    dynamic: bool = False
    def_index: Optional[int] = None    # index of the def statement in the parent body
    def_direct: bool = False
    decorated: bool = False
    is_generator: bool = False
    imports: Dict[str, str] = field(default_factory=dict)   # local name -> dotted target
    aliases: Dict[str, str] = field(default_factory=dict)   # local name -> global name

    @property
    def is_function(self) -> bool:
        return self.kind in ('function', 'lambda', 'comprehension')

    def binding(self, name: str) -> Binding:
        return Binding(name, self.qualname)

    def is_local(self, name: str) -> bool:
        if name in self.declared_global or name in self.declared_nonlocal:
            return False
        return name in self.params or name in self.stores

    def store_count(self, name: str) -> int:
        return len(self.stores.get(name, ())) + (1 if name in self.params else 0)

    def state_of(self, name: str) -> BindingState:
        if name in self.declared_global:
            return BindingState.GLOBAL
        if self.is_local(name):
            if self.kind != 'module' and (name in BUILTIN_NAMES or self.module().is_local(name)):
                return BindingState.SHADOWED
            return BindingState.LOCAL
        return BindingState.UNBOUND

    def module(self) -> 'ScopeInfo':
        scope = self
        while scope.parent is not None:
            scope = scope.parent
        return scope

    def resolve(self, name: str) -> Optional['ScopeInfo']:
        """
        Scope that binds *name* as seen from this scope, or None for a
        builtin. Class bodies are skipped, exactly as Python does for
        names read inside methods.
        """
        if name in self.declared_global:
            return self.module()
        if self.kind == 'module' or self.is_local(name):
            if self.kind == 'module' and not self.is_local(name) and name in BUILTIN_NAMES:
                return None
            return self
        scope = self.parent
        while scope is not None:
            if scope.kind != 'class' and scope.kind != 'module' and scope.is_local(name):
                return scope
            if scope.kind == 'module':
                if scope.is_local(name) or name not in BUILTIN_NAMES:
                    return scope
                return None
            scope = scope.parent
        return None

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


def call_name(node: ast.Call) -> Optional[str]:
    """Dotted name of a call's callee (``len``, ``math.sqrt``), if simple."""
    return dotted_name(node.func)


def dotted_name(node: ast.expr) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = dotted_name(node.value)
        if base:
            return f'{base}.{node.attr}'
    return None


def is_stable_global(module: ScopeInfo, name: str) -> bool:
    """
    True if the module-level (or builtin) *name* can never be rebound
    after module initialisation: bound at most once, by a top-level
    statement, never through ``global`` and never dynamically.
    """
    if module.dynamic or name in module.mutated_by_children:
        return False
    sites = module.stores.get(name, ())
    if not sites:
        return True
    return len(sites) == 1 and sites[0].direct and sites[0].kind in ('def', 'class', 'import', 'assign')


def global_target(scope: ScopeInfo, name: str) -> Optional[str]:
    """
    Module-level or builtin name that *name* denotes when read in *scope*,
    following a local alias (``_g_len = len``) if there is one. None when
    the name is a genuine local or belongs to an enclosing function.
    """
    owner = scope.resolve(name)
    if owner is not None and owner.kind != 'module':
        if owner is scope and name in scope.aliases:
            return scope.aliases[name]
        return None
    return name


def callee_key(scope: ScopeInfo, func: ast.expr) -> Optional[str]:
    """
    Stable key naming the callable *func* refers to: ``len`` for an
    unshadowed builtin, ``helper`` for a once-defined module function,
    ``math.sqrt`` for an attribute of an imported module. None whenever
    the target could change at runtime.
    """
    module = scope.module()
    if isinstance(func, ast.Name):
        target = global_target(scope, func.id)
        if target is None or not is_stable_global(module, target):
            return None
        return module.imports.get(target, target)
    if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name):
        target = global_target(scope, func.value.id)
        if target is None or not is_stable_global(module, target):
            return None
        imported = module.imports.get(target)
        if imported is None or '.' in imported and imported.split('.')[0] != target:
            return None
        return f'{imported}.{func.attr}'
    return None


def resolve_aliases(module: ScopeInfo, index: Dict[int, ast.AST]) -> None:
    """Record locals bound exactly once to a stable global name."""
    for scope in module.walk():
        if scope.kind != 'function' or scope.dynamic:
            continue
        for name, sites in scope.stores.items():
            if len(sites) != 1 or name in scope.params or name in scope.mutated_by_children:
                continue
            site = sites[0]
            if site.kind != 'assign' or not site.direct:
                continue
            value = index.get(site.value_id)
            if not isinstance(value, ast.Name):
                continue
            owner = scope.resolve(value.id)
            if owner is not None and owner.kind != 'module':
                continue
            if is_stable_global(module, value.id):
                scope.aliases[name] = value.id


class ScopeCollector(ast.NodeVisitor):
    """
    Builds the ``ScopeInfo`` tree for a module.

    Usage:
        >>> module_scope = ScopeCollector().collect(ast.parse('x = 1'))
        >>> module_scope.store_count('x')
        1
    """

    def __init__(self):
        self._scope: Optional[ScopeInfo] = None
        self._top_stmt: Optional[ast.stmt] = None
        self._stmt_index: Optional[int] = None
        self._store_kind = 'other'
        self._store_value: Optional[int] = None
        self._qualnames: Set[str] = set()
        self.scopes: Dict[int, ScopeInfo] = {}

    def collect(self, tree: ast.Module) -> ScopeInfo:
        module = self._open('<module>', tree, 'module')
        self._scope = module
        self._visit_body(tree.body)
        self._finish(module)
        return module

    # ---- Scope plumbing ----

    def _open(self, qualname: str, node: ast.AST, kind: str) -> ScopeInfo:
        base, n = qualname, 2
        while qualname in self._qualnames:
            qualname = f'{base}#{n}'
            n += 1
        self._qualnames.add(qualname)
        scope = ScopeInfo(qualname=qualname, node_id=node_id(node), kind=kind, parent=self._scope)
        if self._scope is not None:
            self._scope.children.append(scope)
            scope.def_index = self._stmt_index
            scope.def_direct = node is self._top_stmt
        self.scopes[scope.node_id] = scope
        return scope

    def _child_qualname(self, name: str) -> str:
        parent = self._scope
        if parent.kind == 'module':
            return name
        if parent.kind == 'class':
            return f'{parent.qualname}.{name}'
        return f'{parent.qualname}.<locals>.{name}'

    def _enter(self, scope: ScopeInfo, body, *, expression: bool = False):
        saved = (self._scope, self._top_stmt, self._stmt_index)
        self._scope = scope
        self._top_stmt = None
        self._stmt_index = None
        if expression:
            self.visit(body)
        else:
            self._visit_body(body)
        self._scope, self._top_stmt, self._stmt_index = saved

    def _visit_body(self, body: List[ast.stmt]) -> None:
        for index, stmt in enumerate(body):
            self._top_stmt = stmt
            self._stmt_index = index
            self.visit(stmt)

    def _site(self, kind: str, node: ast.AST, direct: bool = False, value_id=None) -> Site:
        return Site(kind, node_id(node), self._stmt_index, direct, value_id)

    def _store(self, name: str, kind: str, node: ast.AST, direct: bool = False, value_id=None):
        scope = self._scope
        if kind == 'walrus':
            while scope.kind == 'comprehension':
                scope = scope.parent
        scope.stores[name].append(self._site(kind, node, direct, value_id))

    def _store_targets(self, targets, kind: str, value_id=None):
        saved = (self._store_kind, self._store_value)
        self._store_kind, self._store_value = kind, value_id
        for target in targets:
            self.visit(target)
        self._store_kind, self._store_value = saved

    # ---- Bindings ----

    def visit_Name(self, node: ast.Name):
        if isinstance(node.ctx, ast.Load):
            self._scope.reads[node.id].append(self._site('read', node))
        elif isinstance(node.ctx, ast.Store):
            direct = self._store_kind in ('assign', 'augassign') and self._top_stmt is not None \
                and self._is_direct_target(node)
            self._store(node.id, self._store_kind, node, direct, self._store_value)
        else:
            self._store(node.id, 'del', node)

    def _is_direct_target(self, node: ast.Name) -> bool:
        stmt = self._top_stmt
        if isinstance(stmt, ast.Assign):
            return any(t is node for t in stmt.targets)
        if isinstance(stmt, (ast.AugAssign, ast.AnnAssign)):
            return stmt.target is node
        return False

    def visit_Assign(self, node: ast.Assign):
        self.visit(node.value)
        if len(node.targets) == 1 and isinstance(node.targets[0], ast.Name):
            self._store_targets(node.targets, 'assign', node_id(node.value))
        else:
            self._store_targets(node.targets, 'unpack')

    def visit_AnnAssign(self, node: ast.AnnAssign):
        self.visit(node.annotation)
        if node.value is not None:
            self.visit(node.value)
        if isinstance(node.target, ast.Name):
            kind = 'assign' if node.value is not None and node.simple else 'declare'
            value_id = node_id(node.value) if node.value is not None else None
            self._store_targets([node.target], kind, value_id)
        else:
            self.visit(node.target)

    def visit_AugAssign(self, node: ast.AugAssign):
        self.visit(node.value)
        if isinstance(node.target, ast.Name):
            self._scope.reads[node.target.id].append(self._site('augread', node.target))
            self._store_targets([node.target], 'augassign', node_id(node.value))
        else:
            self.visit(node.target)

    def visit_NamedExpr(self, node: ast.NamedExpr):
        self.visit(node.value)
        self._store(node.target.id, 'walrus', node.target)

    def visit_For(self, node: ast.For):
        self.visit(node.iter)
        self._store_targets([node.target], 'for')
        for stmt in node.body + node.orelse:
            self.visit(stmt)

    visit_AsyncFor = visit_For

    def visit_With(self, node: ast.With):
        for item in node.items:
            self.visit(item.context_expr)
            if item.optional_vars is not None:
                self._store_targets([item.optional_vars], 'with')
        for stmt in node.body:
            self.visit(stmt)

    visit_AsyncWith = visit_With

    def visit_ExceptHandler(self, node: ast.ExceptHandler):
        if node.type is not None:
            self.visit(node.type)
        if node.name:
            self._store(node.name, 'except', node)
        for stmt in node.body:
            self.visit(stmt)

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            name = alias.asname or alias.name.split('.')[0]
            self._store(name, 'import', alias, node is self._top_stmt)
            self._scope.imports[name] = alias.name if alias.asname else name

    def visit_ImportFrom(self, node: ast.ImportFrom):
        for alias in node.names:
            if alias.name == '*':
                self._scope.dynamic = True
                self._scope.module().dynamic = True
                continue
            name = alias.asname or alias.name
            self._store(name, 'import', alias, node is self._top_stmt)
            if node.module and not node.level:
                self._scope.imports[name] = f'{node.module}.{alias.name}'

    def visit_Global(self, node: ast.Global):
        self._scope.declared_global.update(node.names)

    def visit_Nonlocal(self, node: ast.Nonlocal):
        self._scope.declared_nonlocal.update(node.names)

    def visit_MatchAs(self, node):
        if node.name:
            self._store(node.name, 'other', node)
        self.generic_visit(node)

    def visit_MatchStar(self, node):
        if node.name:
            self._store(node.name, 'other', node)

    def visit_MatchMapping(self, node):
        if node.rest:
            self._store(node.rest, 'other', node)
        self.generic_visit(node)

    # ---- Nested scopes ----

    def _visit_arguments(self, args: ast.arguments):
        for default in args.defaults + [d for d in args.kw_defaults if d is not None]:
            self.visit(default)
        for a in args.posonlyargs + args.args + args.kwonlyargs + [args.vararg, args.kwarg]:
            if a is not None and a.annotation is not None:
                self.visit(a.annotation)

    @staticmethod
    def _bind_params(scope: ScopeInfo, args: ast.arguments):
        for a in args.posonlyargs + args.args + args.kwonlyargs:
            scope.params.add(a.arg)
        for a in (args.vararg, args.kwarg):
            if a is not None:
                scope.params.add(a.arg)
        scope.simple_params = not (
            args.posonlyargs or args.kwonlyargs or args.vararg or args.kwarg or args.defaults
        )

    def visit_FunctionDef(self, node: ast.FunctionDef):
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_arguments(node.args)
        if node.returns is not None:
            self.visit(node.returns)
        direct = node is self._top_stmt
        self._store(node.name, 'def', node, direct)
        scope = self._open(self._child_qualname(node.name), node, 'function')
        scope.decorated = bool(node.decorator_list)
        self._bind_params(scope, node.args)
        scope.is_generator = any(
            isinstance(n, (ast.Yield, ast.YieldFrom, ast.Await)) for n in own_nodes(node)
        ) or isinstance(node, ast.AsyncFunctionDef)
        self._enter(scope, node.body)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda):
        self._visit_arguments(node.args)
        scope = self._open(f'{self._scope.qualname}.<lambda>', node, 'lambda')
        self._bind_params(scope, node.args)
        self._enter(scope, node.body, expression=True)

    def visit_ClassDef(self, node: ast.ClassDef):
        for expr in node.decorator_list + node.bases + [k.value for k in node.keywords]:
            self.visit(expr)
        self._store(node.name, 'class', node, node is self._top_stmt)
        scope = self._open(self._child_qualname(node.name), node, 'class')
        self._enter(scope, node.body)

    def _visit_comprehension(self, node, elements):
        first, *rest = node.generators
        self.visit(first.iter)
        scope = self._open(f'{self._scope.qualname}.<{type(node).__name__.lower()}>', node,
                           'comprehension')
        saved = (self._scope, self._top_stmt, self._stmt_index)
        self._scope = scope
        self._store_targets([first.target], 'for')
        for cond in first.ifs:
            self.visit(cond)
        for gen in rest:
            self.visit(gen.iter)
            self._store_targets([gen.target], 'for')
            for cond in gen.ifs:
                self.visit(cond)
        for element in elements:
            self.visit(element)
        self._scope, self._top_stmt, self._stmt_index = saved

    def visit_ListComp(self, node):
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node):
        self._visit_comprehension(node, [node.key, node.value])

    # ---- Dynamic behaviour ----

    def visit_Call(self, node: ast.Call):
        name = call_name(node)
        if name in DYNAMIC_CALLS:
            self._scope.dynamic = True
        if name in MODULE_MUTATING_CALLS and name not in ('setattr', 'delattr'):
            self._scope.module().dynamic = True
        if name in ('setattr', 'delattr') and node.args:
            target = dotted_name(node.args[0]) or ''
            if target.startswith('sys.modules') or isinstance(node.args[0], (ast.Call, ast.Subscript)):
                self._scope.module().dynamic = True
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute):
        if node.attr == '__dict__' or dotted_name(node) == 'sys.modules':
            self._scope.module().dynamic = True
        self.generic_visit(node)

    # ---- Escape analysis ----

    def _finish(self, module: ScopeInfo):
        for scope in module.walk():
            if not scope.is_function:
                continue
            for name in list(scope.reads) + list(scope.declared_nonlocal):
                if scope.is_local(name):
                    continue
                owner = scope.resolve(name)
                if owner is not None and owner is not scope and owner.is_function:
                    owner.captured.add(name)
                    if name in scope.declared_nonlocal:
                        owner.mutated_by_children.add(name)
            for name in scope.declared_global:
                if name in scope.stores:
                    module.mutated_by_children.add(name)


def own_nodes(func: ast.AST):
    """Nodes of *func*'s body, not descending into nested scopes."""
    stack = list(func.body) if hasattr(func, 'body') and isinstance(func.body, list) else [func.body]
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)):
            continue
        stack.extend(ast.iter_child_nodes(node))


def bound_before(scope: ScopeInfo, name: str) -> bool:
    """
    True if the module-level or builtin *name* is already bound when the
    top-level statement defining *scope* runs.
    """
    module = scope.module()
    sites = module.stores.get(name, ())
    if not sites:
        return name in BUILTIN_NAMES
    top = scope
    while top.parent is not None and top.parent is not module:
        top = top.parent
    return top.def_index is not None and sites[0].stmt_index is not None \
        and sites[0].stmt_index < top.def_index
