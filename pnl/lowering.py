from __future__ import annotations
import dataclasses
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from . import ast
from . import ir
from .ast import OnFail, find_annotation
from .binder import MAIN, BoundProgram, SymbolKind
from .errors import LowerError


@dataclass
class _StmtCtx:
    timeout: Optional[float] = None
    # dispatched AWAITs not yet suspended on: (handle, target, capture)
    pending: List[Tuple[str, Optional[str], bool]] = field(default_factory=list)


@dataclass
class _Loop:
    loop_id: int
    exit: int
    checkpoint_depth: int


def _names_in(exprs: Sequence[ast.Expr]) -> set:
    return {n.id for e in exprs for n in ast.walk(e) if isinstance(n, ast.Name)}


def _has_call(expr: ast.Expr) -> bool:
    return any(isinstance(n, (ast.Call, ast.Await)) for n in ast.walk(expr))


class Lowering:
    def __init__(self, bound: BoundProgram):
        self.bound = bound
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def lower(self) -> ir.ProgramIR:
        program = self.bound.program
        functions: Dict[str, ir.FunctionIR] = {}
        for fn in program.functions:
            functions[fn.name] = _FunctionLowering(self, fn.name, fn.params, fn.body, fn.pos).build()
        main = _FunctionLowering(self, MAIN, (), program.body, program.pos).build()
        return ir.ProgramIR(
            functions=functions,
            main=main,
            domains=list(self.bound.domain_names),
            settings=program.directive_map(),
        )

    def call_target(self, call: ast.Call) -> ir.CallTarget:
        sym = self.bound.resolutions.get(call.node_id)
        if sym is None:
            raise LowerError(f"call '{call.display_name}' at {call.pos} was not bound")
        if sym.kind == SymbolKind.FUNCTION:
            return ir.CallTarget(ir.TargetKind.FUNCTION, sym.name)
        if sym.kind == SymbolKind.BUILTIN:
            return ir.CallTarget(ir.TargetKind.BUILTIN, sym.name)
        if sym.kind == SymbolKind.DOMAIN_BINDING:
            pack = next(p for p in self.bound.domains if p.name == sym.domain)
            return ir.CallTarget(ir.TargetKind.DOMAIN, sym.name, domain=sym.domain, timeout=pack.functions[sym.name].timeout)
        raise LowerError(f"call '{call.display_name}' resolved to non-callable {sym.kind.value}")


class _FunctionLowering:
    def __init__(self, owner: Lowering, name: str, params: Sequence[str], body: Sequence[ast.Stmt], pos: ast.SourcePos):
        self.owner = owner
        self.fn = ir.FunctionIR(name=name, params=list(params), pos=pos)
        self.body = body
        self.current: Optional[ir.BasicBlock] = None
        self.loops: List[_Loop] = []
        self.checkpoints: List[int] = []
        self._temps = itertools.count(1)

    def build(self) -> ir.FunctionIR:
        entry = self._new_block("entry")
        self.fn.entry = entry.block_id
        self.current = entry
        self._block(self.body)
        if self.current is not None:
            self._terminate(ir.Return(node_id=self.owner.next_id()))
        logger.debug(f"[lower] {self.fn.name}: {len(self.fn.blocks)} block(s)")
        return self.fn

    # ---------- block plumbing ----------
    def _new_block(self, label: str) -> ir.BasicBlock:
        block = ir.BasicBlock(block_id=self.owner.next_id(), label=label)
        self.fn.blocks[block.block_id] = block
        return block

    def _emit(self, instr: ir.Instr) -> ir.Instr:
        if self.current is None:
            # code after RETURN/BREAK; pruned as unreachable
            self.current = self._new_block("dead")
        self.current.instrs.append(instr)
        return instr

    def _terminate(self, instr: ir.Instr) -> None:
        self._emit(instr)
        self.current = None

    def _jump(self, target: ir.BasicBlock, node: Optional[ast.Node] = None) -> None:
        self._terminate(ir.Jump(node_id=self.owner.next_id(), target=target.block_id, **self._src(node)))

    def _src(self, node: Optional[ast.Node]) -> Dict[str, Any]:
        if node is None:
            return {}
        return {"source_id": node.node_id, "pos": node.pos}

    def _temp(self) -> str:
        return f"%t{next(self._temps)}"

    # ---------- statements ----------
    def _block(self, body: Sequence[ast.Stmt]) -> None:
        for stmt in body:
            self._stmt(stmt)

    def _stmt(self, stmt: ast.Stmt) -> None:
        annotations = getattr(stmt, "annotations", ())
        retries = find_annotation(annotations, "retries")
        if retries is not None and not isinstance(stmt, ast.Checkpoint):
            # a statement with @retries gets its own implicit checkpoint
            inner = dataclasses.replace(stmt, annotations=tuple(a for a in annotations if a.name != "retries"))
            self._checkpoint(stmt, (inner,), None, retries)
            return
        ctx = _StmtCtx(timeout=find_annotation(annotations, "timeout"))
        match stmt:
            case ast.Assign():
                self._assign(stmt, ctx)
            case ast.ExprStmt():
                self._call_stmt(stmt.value, ctx, target=None)
            case ast.If():
                self._if(stmt)
            case ast.While():
                self._while(stmt)
            case ast.For():
                self._for(stmt)
            case ast.Parallel():
                self._parallel(stmt, ctx)
            case ast.Checkpoint():
                self._checkpoint(stmt, stmt.body, stmt.recover, find_annotation(stmt.annotations, "retries"))
            case ast.Gate():
                self._gate(stmt, ctx)
            case ast.Return():
                value = self._expr(stmt.value, ctx) if stmt.value is not None else None
                self._flush(ctx)
                self._terminate(ir.Return(node_id=self.owner.next_id(), value=value, **self._src(stmt)))
            case ast.Break():
                loop = self.loops[-1]
                for cp_id in reversed(self.checkpoints[loop.checkpoint_depth:]):
                    self._emit(ir.ExitCheckpoint(node_id=self.owner.next_id(), checkpoint_id=cp_id, **self._src(stmt)))
                self._terminate(ir.Jump(node_id=self.owner.next_id(), target=loop.exit, **self._src(stmt)))
            case _:
                raise LowerError(f"cannot lower {type(stmt).__name__}")

    def _assign(self, stmt: ast.Assign, ctx: _StmtCtx) -> None:
        if isinstance(stmt.value, (ast.Call, ast.Await)):
            self._call_stmt(stmt.value, ctx, target=stmt.target)
            return
        value = self._expr(stmt.value, ctx)
        self._flush(ctx)
        self._emit(ir.Assign(node_id=self.owner.next_id(), target=stmt.target, value=value, **self._src(stmt)))

    def _call_stmt(self, value: ast.Expr, ctx: _StmtCtx, target: Optional[str]) -> None:
        capture = target is None
        if isinstance(value, ast.Await):
            handle = self._dispatch(value, ctx)
            ctx.pending.append((handle, target, capture))
            self._flush(ctx)
            return
        call = value
        args = self._args(call.args, ctx)
        self._emit(ir.CallOp(
            node_id=self.owner.next_id(),
            callee=self.owner.call_target(call),
            args=args,
            target=target,
            timeout=ctx.timeout,
            capture=capture,
            **self._src(call),
        ))
        self._flush(ctx)

    def _if(self, stmt: ast.If) -> None:
        end = self._new_block("if.end")
        for i, arm in enumerate(stmt.arms):
            ctx = _StmtCtx(timeout=find_annotation(arm.annotations, "timeout"))
            cond = self._expr(arm.condition, ctx)
            self._flush(ctx)
            then_blk = self._new_block(f"{arm.keyword.lower()}.then")
            last = i == len(stmt.arms) - 1
            next_blk = end if (last and not stmt.orelse) else self._new_block("else" if last else "elif.test")
            self._terminate(ir.Branch(
                node_id=self.owner.next_id(),
                condition=cond,
                then_target=then_blk.block_id,
                else_target=next_blk.block_id,
                label=arm.keyword.lower(),
                probability=arm.probability,
                **self._src(arm),
            ))
            self.current = then_blk
            self._emit(ir.ArmTaken(node_id=self.owner.next_id(), label=arm.keyword, index=i, probability=arm.probability, **self._src(arm)))
            self._block(arm.body)
            if self.current is not None:
                self._jump(end)
            if next_blk is not end:
                self.current = next_blk
        if stmt.orelse:
            self._emit(ir.ArmTaken(
                node_id=self.owner.next_id(),
                label="ELSE",
                index=len(stmt.arms),
                probability=find_annotation(stmt.else_annotations, "p"),
                **self._src(stmt),
            ))
            self._block(stmt.orelse)
            if self.current is not None:
                self._jump(end)
        self.current = end

    def _while(self, stmt: ast.While) -> None:
        loop_id = self.owner.next_id()
        self._emit(ir.StartLoop(node_id=self.owner.next_id(), loop_id=loop_id, **self._src(stmt)))
        head = self._new_block("while.head")
        self._jump(head)
        self.current = head
        ctx = _StmtCtx(timeout=find_annotation(stmt.annotations, "timeout"))
        cond = self._expr(stmt.condition, ctx)
        self._flush(ctx)
        body = self._new_block("while.body")
        exit_blk = self._new_block("while.exit")
        self._terminate(ir.LoopTest(
            node_id=self.owner.next_id(), loop_id=loop_id, condition=cond,
            body=body.block_id, exit=exit_blk.block_id, **self._src(stmt),
        ))
        self._loop_body(loop_id, body, head, exit_blk, stmt.body)

    def _for(self, stmt: ast.For) -> None:
        loop_id = self.owner.next_id()
        ctx = _StmtCtx(timeout=find_annotation(stmt.annotations, "timeout"))
        iterable = self._expr(stmt.iterable, ctx)
        self._flush(ctx)
        self._emit(ir.StartLoop(node_id=self.owner.next_id(), loop_id=loop_id, iterable=iterable, **self._src(stmt)))
        head = self._new_block("for.head")
        self._jump(head)
        self.current = head
        body = self._new_block("for.body")
        exit_blk = self._new_block("for.exit")
        self._terminate(ir.NextItem(
            node_id=self.owner.next_id(), loop_id=loop_id, var=stmt.var,
            body=body.block_id, exit=exit_blk.block_id, **self._src(stmt),
        ))
        self._loop_body(loop_id, body, head, exit_blk, stmt.body)

    def _loop_body(self, loop_id: int, body: ir.BasicBlock, head: ir.BasicBlock, exit_blk: ir.BasicBlock, stmts) -> None:
        self.loops.append(_Loop(loop_id, exit_blk.block_id, len(self.checkpoints)))
        self.current = body
        self._block(stmts)
        if self.current is not None:
            self._jump(head)
        self.loops.pop()
        self.current = exit_blk

    def _parallel(self, stmt: ast.Parallel, ctx: _StmtCtx) -> None:
        fork_id = self.owner.next_id()
        branches: List[ir.ForkBranch] = []
        arg_ctx = _StmtCtx()
        for i, branch in enumerate(stmt.branches):
            branches.append(ir.ForkBranch(
                index=i,
                name=branch.name or f"%branch{i}",
                callee=self.owner.call_target(branch.call),
                args=self._args(branch.call.args, arg_ctx),
                timeout=find_annotation(branch.annotations, "timeout"),
                source_id=branch.node_id,
            ))
        self._flush(arg_ctx)
        self._emit(ir.Fork(
            node_id=self.owner.next_id(), fork_id=fork_id, quantifier=stmt.quantifier,
            branches=branches, timeout=ctx.timeout, **self._src(stmt),
        ))
        sync = stmt.sync
        self._emit(ir.Join(
            node_id=self.owner.next_id(),
            fork_id=fork_id,
            callee=self.owner.call_target(sync.call),
            args=[self._pure(a) for a in sync.call.args],
            pass_all=not sync.call.args,
            target=sync.target,
            capture=sync.target is None,
            **self._src(sync),
        ))

    def _checkpoint(self, node: ast.Stmt, body: Sequence[ast.Stmt], recover: Optional[Sequence[ast.Stmt]], retries: Optional[int]) -> None:
        cp_id = self.owner.next_id()
        body_blk = self._new_block("checkpoint.body")
        recover_blk = self._new_block("checkpoint.recover") if recover else None
        end = self._new_block("checkpoint.end")
        self._emit(ir.EnterCheckpoint(
            node_id=self.owner.next_id(),
            checkpoint_id=cp_id,
            resume=body_blk.block_id,
            retries=retries,
            recover=recover_blk.block_id if recover_blk else None,
            **self._src(node),
        ))
        self._jump(body_blk)
        self.checkpoints.append(cp_id)
        self.current = body_blk
        self._block(body)
        if self.current is not None:
            self._emit(ir.ExitCheckpoint(node_id=self.owner.next_id(), checkpoint_id=cp_id, **self._src(node)))
            self._jump(end)
        self.checkpoints.pop()
        if recover_blk is not None:
            self.current = recover_blk
            self._block(recover)
            if self.current is not None:
                self._jump(end)
        self.current = end

    def _gate(self, stmt: ast.Gate, ctx: _StmtCtx) -> None:
        cond = self._expr(stmt.condition, ctx)
        self._flush(ctx)
        on_fail = find_annotation(stmt.annotations, "on_fail", OnFail.RETRY)
        abort_target = None
        if on_fail == OnFail.ABORT_LOOP:
            loop = self.loops[-1]
            resume = self.current
            abort = self._new_block("gate.abort")
            self.current = abort
            for cp_id in reversed(self.checkpoints[loop.checkpoint_depth:]):
                self._emit(ir.ExitCheckpoint(node_id=self.owner.next_id(), checkpoint_id=cp_id, **self._src(stmt)))
            self._terminate(ir.Jump(node_id=self.owner.next_id(), target=loop.exit, **self._src(stmt)))
            self.current = resume
            abort_target = abort.block_id
        self._emit(ir.Gate(
            node_id=self.owner.next_id(),
            condition=cond,
            on_fail=on_fail,
            label=find_annotation(stmt.annotations, "label"),
            abort_target=abort_target,
            **self._src(stmt),
        ))

    # ---------- expressions ----------
    def _args(self, args: Sequence[ast.Expr], ctx: _StmtCtx) -> List[ast.Expr]:
        lowered = [self._expr(a, ctx) for a in args]
        if ctx.pending and _names_in(lowered) & {t for _, t, _ in ctx.pending if t}:
            self._flush(ctx)
        return lowered

    def _dispatch(self, node: ast.Await, ctx: _StmtCtx) -> str:
        args = self._args(node.call.args, ctx)
        handle = f"%h{next(self._temps)}"
        self._emit(ir.Dispatch(
            node_id=self.owner.next_id(),
            handle=handle,
            callee=self.owner.call_target(node.call),
            args=args,
            timeout=ctx.timeout,
            **self._src(node),
        ))
        return handle

    def _flush(self, ctx: _StmtCtx) -> None:
        for handle, target, capture in ctx.pending:
            self._emit(ir.Suspend(node_id=self.owner.next_id(), handle=handle, target=target, capture=capture))
        ctx.pending.clear()

    def _pure(self, expr: ast.Expr) -> ast.Expr:
        for node in ast.walk(expr):
            if isinstance(node, ast.Name) and node.node_id not in self.owner.bound.resolutions:
                raise LowerError(f"unresolved name '{node.id}' at {node.pos}")
        return expr

    def _expr(self, expr: ast.Expr, ctx: _StmtCtx) -> ast.Expr:
        if not _has_call(expr):
            return self._pure(expr)
        if isinstance(expr, ast.Call):
            args = self._args(expr.args, ctx)
            tmp = self._temp()
            self._emit(ir.CallOp(
                node_id=self.owner.next_id(),
                callee=self.owner.call_target(expr),
                args=args,
                target=tmp,
                timeout=ctx.timeout,
                **self._src(expr),
            ))
            return ast.Name(id=tmp, pos=expr.pos, node_id=expr.node_id)
        if isinstance(expr, ast.Await):
            handle = self._dispatch(expr, ctx)
            tmp = self._temp()
            ctx.pending.append((handle, tmp, False))
            return ast.Name(id=tmp, pos=expr.pos, node_id=expr.node_id)
        if isinstance(expr, ast.BinaryExpr) and expr.op in ("AND", "OR") and _has_call(expr.right):
            return self._short_circuit(expr, ctx)
        if isinstance(expr, ast.BinaryExpr):
            left = self._expr(expr.left, ctx)
            return dataclasses.replace(expr, left=left, right=self._expr(expr.right, ctx))
        if isinstance(expr, ast.UnaryExpr):
            return dataclasses.replace(expr, operand=self._expr(expr.operand, ctx))
        if isinstance(expr, ast.ListExpr):
            return dataclasses.replace(expr, items=tuple(self._expr(i, ctx) for i in expr.items))
        if isinstance(expr, ast.IndexExpr):
            target = self._expr(expr.target, ctx)
            return dataclasses.replace(expr, target=target, index=self._expr(expr.index, ctx))
        raise LowerError(f"cannot lower expression {type(expr).__name__}")

    def _short_circuit(self, expr: ast.BinaryExpr, ctx: _StmtCtx) -> ast.Expr:
        is_and = expr.op == "AND"
        left = self._expr(expr.left, ctx)
        self._flush(ctx)
        tmp = self._temp()
        self._emit(ir.Assign(node_id=self.owner.next_id(), target=tmp, value=ast.Literal(value=not is_and, pos=expr.pos)))
        rhs = self._new_block(f"{expr.op.lower()}.rhs")
        end = self._new_block(f"{expr.op.lower()}.end")
        self._terminate(ir.Branch(
            node_id=self.owner.next_id(),
            condition=left,
            then_target=rhs.block_id if is_and else end.block_id,
            else_target=end.block_id if is_and else rhs.block_id,
            label=expr.op.lower(),
            **self._src(expr),
        ))
        self.current = rhs
        right = self._expr(expr.right, ctx)
        self._flush(ctx)
        # NOT NOT coerces the right operand to a boolean
        coerced = ast.UnaryExpr(op="NOT", operand=ast.UnaryExpr(op="NOT", operand=right, pos=expr.pos), pos=expr.pos)
        self._emit(ir.Assign(node_id=self.owner.next_id(), target=tmp, value=coerced, **self._src(expr)))
        self._jump(end)
        self.current = end
        return ast.Name(id=tmp, pos=expr.pos, node_id=expr.node_id)


def lower(bound: BoundProgram) -> ir.ProgramIR:
    """Lower a bound program to IR and verify its graph invariants."""
    from .graph import IRGraph

    program_ir = Lowering(bound).lower()
    graph = IRGraph(program_ir)
    graph.verify()
    removed = graph.prune_unreachable()
    if removed:
        logger.debug(f"[lower] pruned {removed} unreachable block(s)")
    return program_ir
