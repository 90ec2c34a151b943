from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from loguru import logger

from . import ast
from .ast import OnFail, find_annotation
from .corelib import BUILTINS
from .domains import DomainPack
from .errors import BindError, BindErrorReason

BUILTIN_SCOPE = "<builtins>"
DOMAIN_SCOPE = "<domains>"
MODULE_SCOPE = "<module>"
MAIN = "<main>"


class SymbolKind(str, Enum):
    FUNCTION = "function"
    VARIABLE = "variable"
    DOMAIN_BINDING = "domain-binding"
    BUILTIN = "builtin"
    AMBIGUOUS = "ambiguous"


CALLABLE_KINDS = (SymbolKind.FUNCTION, SymbolKind.DOMAIN_BINDING, SymbolKind.BUILTIN, SymbolKind.AMBIGUOUS)


@dataclass(frozen=True)
class Symbol:
    name: str
    kind: SymbolKind
    scope: str
    domain: Optional[str] = None
    arity: Optional[int] = None
    node_id: Optional[int] = None
    candidates: Tuple[str, ...] = ()


@dataclass
class SymbolTable:
    name: str
    symbols: Dict[str, Symbol] = field(default_factory=dict)
    # lookup-only back reference; tables are owned by BoundProgram.scopes
    parent: Optional["SymbolTable"] = field(default=None, compare=False, repr=False)
    parent_name: Optional[str] = None

    def __post_init__(self):
        if self.parent is not None:
            self.parent_name = self.parent.name

    def declare(self, symbol: Symbol) -> Symbol:
        return self.symbols.setdefault(symbol.name, symbol)

    def lookup_local(self, name: str) -> Optional[Symbol]:
        return self.symbols.get(name)

    def lookup(self, name: str, callable_only: bool = False) -> Optional[Symbol]:
        table: Optional[SymbolTable] = self
        while table is not None:
            sym = table.symbols.get(name)
            if sym is not None and (not callable_only or sym.kind in CALLABLE_KINDS):
                return sym
            table = table.parent
        return None

    def __contains__(self, name: str) -> bool:
        return name in self.symbols


@dataclass
class BoundProgram:
    program: ast.Program
    domains: Tuple[DomainPack, ...]
    scopes: Dict[str, SymbolTable]
    # node_id of every Name / Call node -> resolved declaration
    resolutions: Dict[int, Symbol]

    def resolve(self, node: ast.Node) -> Symbol:
        return self.resolutions[node.node_id]

    def scope(self, name: str) -> SymbolTable:
        return self.scopes[name]

    @property
    def domain_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.domains)


def _assigned_names(body: Iterable[ast.Stmt]) -> List[str]:
    names: List[str] = []
    for stmt in body:
        for node in ast.walk(stmt):
            if isinstance(node, ast.Assign):
                names.append(node.target)
            elif isinstance(node, ast.For):
                names.append(node.var)
            elif isinstance(node, ast.Sync) and node.target:
                names.append(node.target)
    return names


class SymbolBinder:
    """Resolves names against lexical scopes, active domain packs and builtins:
    - DEF functions shadow domain functions, which shadow builtins
    - a name exported by more than one active pack must be qualified
    - structural checks that need scope context (BREAK placement, SYNC arguments)
    """

    def __init__(self, program: ast.Program, domains: Sequence[DomainPack] = ()):
        self.program = program
        self.domains: Tuple[DomainPack, ...] = tuple(domains)
        self.packs: Dict[str, DomainPack] = {p.name: p for p in self.domains}
        self.scopes: Dict[str, SymbolTable] = {}
        self.resolutions: Dict[int, Symbol] = {}

    def bind(self) -> BoundProgram:
        builtins = self._add_scope(SymbolTable(BUILTIN_SCOPE))
        for name, builtin in BUILTINS.items():
            builtins.declare(Symbol(name, SymbolKind.BUILTIN, BUILTIN_SCOPE, arity=builtin.arity))

        domain_scope = self._add_scope(SymbolTable(DOMAIN_SCOPE, parent=builtins))
        for pack in self.domains:
            for fname, binding in pack.functions.items():
                existing = domain_scope.lookup_local(fname)
                if existing is None:
                    domain_scope.declare(Symbol(fname, SymbolKind.DOMAIN_BINDING, DOMAIN_SCOPE, domain=pack.name, arity=binding.arity))
                    continue
                candidates = existing.candidates or (existing.domain,)
                domain_scope.symbols[fname] = Symbol(
                    fname, SymbolKind.AMBIGUOUS, DOMAIN_SCOPE, candidates=tuple(candidates) + (pack.name,)
                )

        module = self._add_scope(SymbolTable(MODULE_SCOPE, parent=domain_scope))
        for fn in self.program.functions:
            if fn.name in module:
                raise BindError(fn.name, BindErrorReason.DUPLICATE_DEFINITION, fn.pos, "function defined twice")
            module.declare(Symbol(fn.name, SymbolKind.FUNCTION, MODULE_SCOPE, arity=len(fn.params), node_id=fn.node_id))

        for fn in self.program.functions:
            self._bind_body(fn.name, fn.params, fn.body, module, fn.pos)
        self._bind_body(MAIN, (), self.program.body, module, self.program.pos)

        logger.debug(
            f"[bind] {len(self.program.functions)} function(s), domains={list(self.packs)}, "
            f"{len(self.resolutions)} resolved reference(s)"
        )
        return BoundProgram(self.program, self.domains, self.scopes, self.resolutions)

    def _add_scope(self, table: SymbolTable) -> SymbolTable:
        self.scopes[table.name] = table
        return table

    def _bind_body(self, name: str, params: Sequence[str], body: Sequence[ast.Stmt], module: SymbolTable, pos) -> None:
        scope = self._add_scope(SymbolTable(name, parent=module))
        for param in params:
            if param in scope:
                raise BindError(param, BindErrorReason.DUPLICATE_DEFINITION, pos, f"parameter repeated in '{name}'")
            scope.declare(Symbol(param, SymbolKind.VARIABLE, name))
        for var in _assigned_names(body):
            scope.declare(Symbol(var, SymbolKind.VARIABLE, name))
        self._check_block(body, scope, loop_depth=0)

    # ---------- statements ----------
    def _check_block(self, body: Sequence[ast.Stmt], scope: SymbolTable, loop_depth: int) -> None:
        for stmt in body:
            self._check_stmt(stmt, scope, loop_depth)

    def _check_stmt(self, stmt: ast.Stmt, scope: SymbolTable, loop_depth: int) -> None:
        match stmt:
            case ast.Assign():
                self._check_expr(stmt.value, scope)
            case ast.ExprStmt():
                self._check_expr(stmt.value, scope)
            case ast.If():
                for arm in stmt.arms:
                    self._check_expr(arm.condition, scope)
                    self._check_block(arm.body, scope, loop_depth)
                if stmt.orelse:
                    self._check_block(stmt.orelse, scope, loop_depth)
            case ast.While():
                self._check_expr(stmt.condition, scope)
                self._check_block(stmt.body, scope, loop_depth + 1)
            case ast.For():
                self._check_expr(stmt.iterable, scope)
                self._check_block(stmt.body, scope, loop_depth + 1)
            case ast.Parallel():
                self._check_parallel(stmt, scope)
            case ast.Checkpoint():
                self._check_block(stmt.body, scope, loop_depth)
                if stmt.recover:
                    self._check_block(stmt.recover, scope, loop_depth)
            case ast.Gate():
                self._check_expr(stmt.condition, scope)
                if find_annotation(stmt.annotations, "on_fail") == OnFail.ABORT_LOOP and loop_depth == 0:
                    raise BindError("GATE", BindErrorReason.MISPLACED_STATEMENT, stmt.pos, "@on_fail=abort_loop outside a loop")
            case ast.Return():
                if stmt.value is not None:
                    self._check_expr(stmt.value, scope)
            case ast.Break():
                if loop_depth == 0:
                    raise BindError("BREAK", BindErrorReason.MISPLACED_STATEMENT, stmt.pos, "BREAK outside a loop")
            case _:
                raise BindError(type(stmt).__name__, BindErrorReason.MISPLACED_STATEMENT, stmt.pos, "unsupported statement")

    def _check_parallel(self, stmt: ast.Parallel, scope: SymbolTable) -> None:
        fork = self._add_scope(SymbolTable(f"{scope.name}/fork@{stmt.node_id}", parent=scope))
        for branch in stmt.branches:
            self._check_call(branch.call, scope)
            if branch.name is None:
                continue
            if branch.name in fork:
                raise BindError(branch.name, BindErrorReason.DUPLICATE_DEFINITION, branch.pos, "branch name repeated")
            fork.declare(Symbol(branch.name, SymbolKind.VARIABLE, fork.name, node_id=branch.node_id))
        sync = stmt.sync
        for arg in sync.call.args:
            for node in ast.walk(arg):
                if isinstance(node, (ast.Call, ast.Await)):
                    raise BindError(sync.call.display_name, BindErrorReason.MISPLACED_STATEMENT, node.pos, "calls are not allowed in SYNC arguments")
        # a SYNC call without arguments receives every branch result in declaration order
        arg_count = len(sync.call.args) if sync.call.args else len(stmt.branches)
        self._check_call(sync.call, fork, arg_count=arg_count)

    # ---------- expressions ----------
    def _check_expr(self, expr: ast.Expr, scope: SymbolTable) -> None:
        if isinstance(expr, ast.Name):
            sym = scope.lookup(expr.id)
            if sym is None:
                raise BindError(expr.id, BindErrorReason.UNDEFINED_SYMBOL, expr.pos)
            if sym.kind != SymbolKind.VARIABLE:
                raise BindError(expr.id, BindErrorReason.UNDEFINED_SYMBOL, expr.pos, f"'{expr.id}' is a {sym.kind.value}, not a variable")
            self.resolutions[expr.node_id] = sym
            return
        if isinstance(expr, ast.Call):
            self._check_call(expr, scope)
            return
        if isinstance(expr, ast.Await):
            self._check_call(expr.call, scope)
            return
        for child in ast.iter_children(expr):
            self._check_expr(child, scope)

    def _check_call(self, call: ast.Call, scope: SymbolTable, arg_count: Optional[int] = None) -> Symbol:
        for arg in call.args:
            self._check_expr(arg, scope)
        n_args = len(call.args) if arg_count is None else arg_count
        if call.qualifier is not None:
            pack = self.packs.get(call.qualifier)
            if pack is None:
                raise BindError(call.qualifier, BindErrorReason.UNKNOWN_DOMAIN, call.pos, f"active: {sorted(self.packs)}")
            binding = pack.get(call.name)
            if binding is None:
                raise BindError(call.display_name, BindErrorReason.UNDEFINED_SYMBOL, call.pos, f"not exported by '{pack.name}'")
            sym = Symbol(call.name, SymbolKind.DOMAIN_BINDING, DOMAIN_SCOPE, domain=pack.name, arity=binding.arity)
        else:
            sym = scope.lookup(call.name, callable_only=True)
            if sym is None:
                if scope.lookup(call.name) is not None:
                    raise BindError(call.name, BindErrorReason.NOT_CALLABLE, call.pos)
                raise BindError(call.name, BindErrorReason.UNDEFINED_SYMBOL, call.pos)
            if sym.kind == SymbolKind.AMBIGUOUS:
                raise BindError(call.name, BindErrorReason.DOMAIN_CONFLICT, call.pos, "exported by " + ", ".join(sym.candidates))
        if sym.arity is not None and n_args != sym.arity:
            raise BindError(call.display_name, BindErrorReason.ARITY_MISMATCH, call.pos, f"expected {sym.arity} argument(s), got {n_args}")
        self.resolutions[call.node_id] = sym
        return sym


def _normalize_domains(domains: Union[None, DomainPack, Iterable[DomainPack]]) -> Tuple[DomainPack, ...]:
    if domains is None:
        return ()
    if isinstance(domains, DomainPack):
        return (domains,)
    packs: Dict[str, DomainPack] = {}
    for pack in domains:
        seen = packs.get(pack.name)
        if seen is not None and seen != pack:
            raise BindError(pack.name, BindErrorReason.DOMAIN_CONFLICT, detail="two different packs share this name")
        packs[pack.name] = pack
    return tuple(packs.values())


def bind(program: Union[ast.Program, BoundProgram], domains: Union[None, DomainPack, Iterable[DomainPack]] = None) -> BoundProgram:
    """Resolve every reference in ``program`` against the given active domain packs.

    Pure: the AST is never mutated, so binding the same program with the same
    packs again yields an equal ``BoundProgram``.
    """
    if isinstance(program, BoundProgram):
        program = program.program
    return SymbolBinder(program, _normalize_domains(domains)).bind()
