from __future__ import annotations
import ast as pyast
import itertools
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from lark import Token as LarkToken, Transformer, Tree, v_args
from lark.exceptions import UnexpectedInput, UnexpectedToken, VisitError
from lark.lexer import PatternStr

from . import ast
from .annotations import parse_annotation, parse_directive
from .ast import SourcePos, NO_POS, Quantifier
from .errors import CompileError, ParseError
from .lexer import Token, load_grammar, tokenize


def _describe_terminal(name: str) -> str:
    if name == "$END":
        return "end of input"
    try:
        term = load_grammar().get_terminal(name)
    except KeyError:
        return name
    if isinstance(term.pattern, PatternStr):
        return repr(term.pattern.value)
    return name.lstrip("_")


@v_args(meta=True)
class AstBuilder(Transformer):
    """Builds immutable ``pnl.ast`` nodes from the lark parse tree."""

    def __init__(self):
        super().__init__()
        self._ids = itertools.count(1)

    def _node(self, cls, meta, **fields):
        pos = NO_POS if getattr(meta, "empty", True) else SourcePos(meta.line, meta.column)
        return cls(pos=pos, node_id=next(self._ids), **fields)

    # ---------- top level ----------
    def start(self, meta, children):
        directives = tuple(c for c in children if isinstance(c, ast.Directive))
        functions = tuple(c for c in children if isinstance(c, ast.FunctionDef))
        body = tuple(c for c in children if not isinstance(c, (ast.Directive, ast.FunctionDef)))
        return self._node(ast.Program, meta, directives=directives, functions=functions, body=body)

    def directive(self, meta, children):
        tok = children[0]
        key, value, raw = parse_directive(str(tok), SourcePos(tok.line, tok.column))
        return self._node(ast.Directive, meta, key=key, value=value, raw=raw)

    def annotations(self, meta, children):
        return tuple(parse_annotation(str(tok), SourcePos(tok.line, tok.column)) for tok in children)

    def params(self, meta, children):
        return tuple(str(tok) for tok in children)

    def funcdef(self, meta, children):
        name, params, annotations, body = children
        return self._node(ast.FunctionDef, meta, name=str(name), params=params or (), body=body, annotations=annotations)

    def arrow_body(self, meta, children):
        return (children[0],)

    def block(self, meta, children):
        return tuple(children)

    # ---------- statements ----------
    def assign(self, meta, children):
        target, value, annotations = children
        return self._node(ast.Assign, meta, target=str(target), value=value, annotations=annotations)

    def expr_stmt(self, meta, children):
        value, annotations = children
        return self._node(ast.ExprStmt, meta, value=value, annotations=annotations)

    def if_clause(self, meta, children):
        condition, annotations, body = children
        return self._node(ast.IfArm, meta, condition=condition, body=body, annotations=annotations, keyword="IF")

    def elif_clause(self, meta, children):
        condition, annotations, body = children
        return self._node(ast.IfArm, meta, condition=condition, body=body, annotations=annotations, keyword="ELIF")

    def else_clause(self, meta, children):
        annotations, body = children
        return (annotations, body)

    def if_stmt(self, meta, children):
        arms = tuple(c for c in children if isinstance(c, ast.IfArm))
        orelse = None
        else_annotations = ()
        if isinstance(children[-1], tuple):
            else_annotations, orelse = children[-1]
        return self._node(ast.If, meta, arms=arms, orelse=orelse, else_annotations=else_annotations)

    def while_stmt(self, meta, children):
        condition, annotations, body = children
        return self._node(ast.While, meta, condition=condition, body=body, annotations=annotations)

    def for_stmt(self, meta, children):
        var, iterable, annotations, body = children
        return self._node(ast.For, meta, var=str(var), iterable=iterable, body=body, annotations=annotations)

    def quantifier(self, meta, children):
        return Quantifier(str(children[0]))

    def branch(self, meta, children):
        name, call, annotations = children
        return self._node(ast.ParallelBranch, meta, call=call, name=str(name) if name is not None else None, annotations=annotations)

    def sync_clause(self, meta, children):
        call, target = children
        return self._node(ast.Sync, meta, call=call, target=str(target) if target is not None else None)

    def parallel_stmt(self, meta, children):
        quantifier, annotations = children[0], children[1]
        branches = tuple(children[2:-1])
        return self._node(
            ast.Parallel, meta,
            quantifier=quantifier or Quantifier.ALL,
            branches=branches,
            sync=children[-1],
            annotations=annotations,
        )

    def recover_clause(self, meta, children):
        return children[0]

    def checkpoint_stmt(self, meta, children):
        annotations, body, recover = children
        return self._node(ast.Checkpoint, meta, body=body, recover=recover, annotations=annotations)

    def gate_stmt(self, meta, children):
        condition, annotations = children
        return self._node(ast.Gate, meta, condition=condition, annotations=annotations)

    def return_stmt(self, meta, children):
        value, annotations = children
        return self._node(ast.Return, meta, value=value, annotations=annotations)

    def break_stmt(self, meta, children):
        return self._node(ast.Break, meta, annotations=children[0])

    # ---------- expressions ----------
    def binop(self, meta, children):
        left, op, right = children
        return self._node(ast.BinaryExpr, meta, op=str(op), left=left, right=right)

    def unop(self, meta, children):
        op, operand = children
        return self._node(ast.UnaryExpr, meta, op=str(op), operand=operand)

    def index(self, meta, children):
        target, idx = children
        return self._node(ast.IndexExpr, meta, target=target, index=idx)

    def number(self, meta, children):
        text = str(children[0])
        value = int(text) if text.isdigit() else float(text)
        return self._node(ast.Literal, meta, value=value)

    def string(self, meta, children):
        return self._node(ast.Literal, meta, value=pyast.literal_eval(str(children[0])))

    def true(self, meta, children):
        return self._node(ast.Literal, meta, value=True)

    def false(self, meta, children):
        return self._node(ast.Literal, meta, value=False)

    def list_lit(self, meta, children):
        return self._node(ast.ListExpr, meta, items=children[0] or ())

    def var(self, meta, children):
        return self._node(ast.Name, meta, id=str(children[0]))

    def call(self, meta, children):
        name, args = children
        return self._node(ast.Call, meta, name=str(name), args=args or ())

    def qualified_call(self, meta, children):
        qualifier, name, args = children
        return self._node(ast.Call, meta, name=str(name), args=args or (), qualifier=str(qualifier))

    def await_expr(self, meta, children):
        return self._node(ast.Await, meta, call=children[0])

    def exprlist(self, meta, children):
        return tuple(children)


def _parse_tree(tokens: Sequence[Token]) -> Tree:
    lark = load_grammar()
    interactive = lark.parse_interactive()
    last = None
    try:
        for tok in tokens:
            last = tok.to_lark()
            interactive.feed_token(last)
        eof = LarkToken.new_borrow_pos("$END", "", last) if last is not None else LarkToken("$END", "", 0, 1, 1)
        return interactive.feed_token(eof)
    except UnexpectedToken as e:
        found = "end of input" if e.token.type == "$END" else repr(str(e.token))
        position = SourcePos(e.line, e.column) if e.line and e.line > 0 else (tokens[-1].pos if tokens else SourcePos(1, 1))
        raise ParseError([_describe_terminal(t) for t in e.expected], found, position) from None
    except UnexpectedInput as e:
        raise ParseError("valid input", str(e), SourcePos(e.line, e.column)) from None


def parse(source: Union[Iterable[Token], str, Path]) -> ast.Program:
    """Parse a token stream (or source text / a ``.pnl`` file) into a ``Program``."""
    if isinstance(source, Path):
        tokens: List[Token] = tokenize(source.read_text(encoding="utf-8"))
    elif isinstance(source, str):
        tokens = tokenize(source)
    else:
        tokens = list(source)
    tree = _parse_tree(tokens)
    try:
        return AstBuilder().transform(tree)
    except VisitError as e:
        if isinstance(e.orig_exc, CompileError):
            raise e.orig_exc from None
        raise


def parse_file(path: Union[str, Path]) -> ast.Program:
    return parse(Path(path))


def first_node(program: ast.Program, cls) -> Optional[ast.Node]:
    """Return the first node of type ``cls`` in source order, if any."""
    for node in ast.walk(program):
        if isinstance(node, cls):
            return node
    return None
