# AST node types for PNL programs
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class SourcePos:
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


NO_POS = SourcePos(0, 0)


class Quantifier(str, Enum):
    ALL = "ALL"
    ANY = "ANY"
    NONE = "NONE"


class OnFail(str, Enum):
    RETRY = "retry"
    ABORT_LOOP = "abort_loop"


@dataclass(frozen=True)
class Annotation:
    """Typed metadata attached to a node, e.g. ``@p=0.8`` or ``@timeout=30s``."""
    name: str
    value: Any
    raw: str
    pos: SourcePos = NO_POS


@dataclass(frozen=True, kw_only=True)
class Node:
    pos: SourcePos = NO_POS
    node_id: int = 0


def find_annotation(annotations: Tuple[Annotation, ...], name: str, default: Any = None) -> Any:
    for ann in annotations:
        if ann.name == name:
            return ann.value
    return default


# -------- Expressions ---------

@dataclass(frozen=True, kw_only=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True, kw_only=True)
class Name(Node):
    id: str


@dataclass(frozen=True, kw_only=True)
class BinaryExpr(Node):
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True, kw_only=True)
class UnaryExpr(Node):
    op: str
    operand: "Expr"


@dataclass(frozen=True, kw_only=True)
class ListExpr(Node):
    items: Tuple["Expr", ...] = ()


@dataclass(frozen=True, kw_only=True)
class IndexExpr(Node):
    target: "Expr"
    index: "Expr"


@dataclass(frozen=True, kw_only=True)
class Call(Node):
    name: str
    args: Tuple["Expr", ...] = ()
    qualifier: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.qualifier}.{self.name}" if self.qualifier else self.name


@dataclass(frozen=True, kw_only=True)
class Await(Node):
    call: Call


Expr = Union[Literal, Name, BinaryExpr, UnaryExpr, ListExpr, IndexExpr, Call, Await]


# -------- Statements ---------

@dataclass(frozen=True, kw_only=True)
class Assign(Node):
    target: str
    value: Expr
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class ExprStmt(Node):
    value: Union[Call, Await]
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class IfArm(Node):
    condition: Expr
    body: Tuple["Stmt", ...]
    annotations: Tuple[Annotation, ...] = ()
    keyword: str = "IF"

    @property
    def probability(self) -> Optional[float]:
        return find_annotation(self.annotations, "p")


@dataclass(frozen=True, kw_only=True)
class If(Node):
    arms: Tuple[IfArm, ...]
    orelse: Optional[Tuple["Stmt", ...]] = None
    else_annotations: Tuple[Annotation, ...] = ()
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class While(Node):
    condition: Expr
    body: Tuple["Stmt", ...]
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class For(Node):
    var: str
    iterable: Expr
    body: Tuple["Stmt", ...]
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class ParallelBranch(Node):
    call: Call
    name: Optional[str] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Sync(Node):
    call: Call
    target: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class Parallel(Node):
    quantifier: Quantifier
    branches: Tuple[ParallelBranch, ...]
    sync: Sync
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Checkpoint(Node):
    body: Tuple["Stmt", ...]
    recover: Optional[Tuple["Stmt", ...]] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Gate(Node):
    condition: Expr
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Return(Node):
    value: Optional[Expr] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Break(Node):
    annotations: Tuple[Annotation, ...] = ()


Stmt = Union[Assign, ExprStmt, If, While, For, Parallel, Checkpoint, Gate, Return, Break]


# -------- Top level ---------

@dataclass(frozen=True, kw_only=True)
class Directive(Node):
    key: str
    value: Any
    raw: str = ""


@dataclass(frozen=True, kw_only=True)
class FunctionDef(Node):
    name: str
    params: Tuple[str, ...]
    body: Tuple[Stmt, ...]
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Program(Node):
    directives: Tuple[Directive, ...] = ()
    functions: Tuple[FunctionDef, ...] = ()
    body: Tuple[Stmt, ...] = ()

    def directive_map(self) -> Dict[str, Any]:
        # later directives override earlier ones
        return {d.key: d.value for d in self.directives}

    def function(self, name: str) -> Optional[FunctionDef]:
        for fn in self.functions:
            if fn.name == name:
                return fn
        return None


def iter_children(node: Any):
    """Yield the direct child nodes of an AST node (statements and expressions)."""
    if isinstance(node, Program):
        yield from node.functions
        yield from node.body
    elif isinstance(node, FunctionDef):
        yield from node.body
    elif isinstance(node, Assign):
        yield node.value
    elif isinstance(node, ExprStmt):
        yield node.value
    elif isinstance(node, If):
        for arm in node.arms:
            yield arm
        if node.orelse:
            yield from node.orelse
    elif isinstance(node, IfArm):
        yield node.condition
        yield from node.body
    elif isinstance(node, While):
        yield node.condition
        yield from node.body
    elif isinstance(node, For):
        yield node.iterable
        yield from node.body
    elif isinstance(node, Parallel):
        yield from node.branches
        yield node.sync
    elif isinstance(node, ParallelBranch):
        yield node.call
    elif isinstance(node, Sync):
        yield node.call
    elif isinstance(node, Checkpoint):
        yield from node.body
        if node.recover:
            yield from node.recover
    elif isinstance(node, Gate):
        yield node.condition
    elif isinstance(node, Return):
        if node.value is not None:
            yield node.value
    elif isinstance(node, BinaryExpr):
        yield node.left
        yield node.right
    elif isinstance(node, UnaryExpr):
        yield node.operand
    elif isinstance(node, ListExpr):
        yield from node.items
    elif isinstance(node, IndexExpr):
        yield node.target
        yield node.index
    elif isinstance(node, Call):
        yield from node.args
    elif isinstance(node, Await):
        yield node.call


def walk(node: Any):
    """Depth-first pre-order traversal over a node and its descendants."""
    yield node
    for child in iter_children(node):
        yield from walk(child)
