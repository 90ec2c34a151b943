from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .ast import Expr, Quantifier, OnFail, SourcePos, NO_POS

# -------- PNL Intermediate Representation ---------
# Every function lowers to a control-flow graph of basic blocks. Expressions
# inside instructions are pure (calls were hoisted into CallOp / Dispatch).


class TargetKind(str, Enum):
    FUNCTION = "function"
    DOMAIN = "domain"
    BUILTIN = "builtin"


@dataclass(frozen=True)
class CallTarget:
    kind: TargetKind
    name: str
    domain: Optional[str] = None
    timeout: Optional[float] = None  # default deadline declared by the pack binding

    def __str__(self) -> str:
        return f"{self.domain}.{self.name}" if self.domain else self.name


@dataclass(kw_only=True)
class Instr:
    node_id: int
    source_id: Optional[int] = None
    pos: SourcePos = NO_POS

    terminator = False


# -------- plain instructions ---------

@dataclass(kw_only=True)
class Assign(Instr):
    target: str
    value: Expr


@dataclass(kw_only=True)
class CallOp(Instr):
    callee: CallTarget
    args: List[Expr] = field(default_factory=list)
    target: Optional[str] = None
    timeout: Optional[float] = None
    # statement-level call: its value becomes the frame's implicit result
    capture: bool = False


@dataclass(kw_only=True)
class Dispatch(Instr):
    handle: str
    callee: CallTarget
    args: List[Expr] = field(default_factory=list)
    timeout: Optional[float] = None


@dataclass(kw_only=True)
class Suspend(Instr):
    handle: str
    target: Optional[str] = None
    capture: bool = False


@dataclass(kw_only=True)
class ArmTaken(Instr):
    label: str
    index: int
    probability: Optional[float] = None


@dataclass(kw_only=True)
class Gate(Instr):
    condition: Expr
    on_fail: OnFail = OnFail.RETRY
    label: Optional[str] = None
    abort_target: Optional[int] = None


@dataclass(kw_only=True)
class EnterCheckpoint(Instr):
    checkpoint_id: int
    resume: int
    retries: Optional[int] = None
    recover: Optional[int] = None


@dataclass(kw_only=True)
class ExitCheckpoint(Instr):
    checkpoint_id: int


@dataclass(kw_only=True)
class StartLoop(Instr):
    loop_id: int
    iterable: Optional[Expr] = None  # set for FOR loops


@dataclass(kw_only=True)
class ForkBranch:
    index: int
    name: str
    callee: CallTarget
    args: List[Expr] = field(default_factory=list)
    timeout: Optional[float] = None
    source_id: Optional[int] = None


@dataclass(kw_only=True)
class Fork(Instr):
    fork_id: int
    quantifier: Quantifier
    branches: List[ForkBranch] = field(default_factory=list)
    timeout: Optional[float] = None


@dataclass(kw_only=True)
class Join(Instr):
    fork_id: int
    callee: CallTarget
    args: List[Expr] = field(default_factory=list)
    # empty args: the join function receives every branch result positionally
    pass_all: bool = False
    target: Optional[str] = None
    capture: bool = False


# -------- terminators ---------

@dataclass(kw_only=True)
class Jump(Instr):
    target: int
    terminator = True


@dataclass(kw_only=True)
class Branch(Instr):
    condition: Expr
    then_target: int
    else_target: int
    label: str = "if"
    probability: Optional[float] = None
    terminator = True


@dataclass(kw_only=True)
class LoopTest(Instr):
    loop_id: int
    condition: Expr
    body: int
    exit: int
    terminator = True


@dataclass(kw_only=True)
class NextItem(Instr):
    loop_id: int
    var: str
    body: int
    exit: int
    terminator = True


@dataclass(kw_only=True)
class Return(Instr):
    value: Optional[Expr] = None
    terminator = True


Terminator = Union[Jump, Branch, LoopTest, NextItem, Return]


def successors(instr: Instr) -> List[int]:
    if isinstance(instr, Jump):
        return [instr.target]
    if isinstance(instr, Branch):
        return [instr.then_target, instr.else_target]
    if isinstance(instr, (LoopTest, NextItem)):
        return [instr.body, instr.exit]
    if isinstance(instr, EnterCheckpoint):
        return [b for b in (instr.resume, instr.recover) if b is not None]
    if isinstance(instr, Gate) and instr.abort_target is not None:
        return [instr.abort_target]
    return []


@dataclass
class BasicBlock:
    block_id: int
    label: str
    instrs: List[Instr] = field(default_factory=list)

    @property
    def terminator(self) -> Optional[Terminator]:
        if self.instrs and self.instrs[-1].terminator:
            return self.instrs[-1]
        return None


@dataclass
class FunctionIR:
    name: str
    params: List[str] = field(default_factory=list)
    entry: int = 0
    blocks: Dict[int, BasicBlock] = field(default_factory=dict)
    pos: SourcePos = NO_POS

    def edges(self) -> List[Tuple[int, int]]:
        out = []
        for block in self.blocks.values():
            for instr in block.instrs:
                out.extend((block.block_id, succ) for succ in successors(instr))
        return out

    def instructions(self):
        for block in self.blocks.values():
            yield from block.instrs


@dataclass
class ProgramIR:
    functions: Dict[str, FunctionIR] = field(default_factory=dict)
    main: Optional[FunctionIR] = None
    domains: List[str] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)

    def function(self, name: str) -> FunctionIR:
        if self.main is not None and name == self.main.name:
            return self.main
        return self.functions[name]

    def all_functions(self) -> List[FunctionIR]:
        fns = list(self.functions.values())
        if self.main is not None:
            fns.append(self.main)
        return fns

    def to_dict(self) -> Dict[str, Any]:
        def _fn(fn: FunctionIR) -> Dict[str, Any]:
            return {
                "name": fn.name,
                "params": list(fn.params),
                "entry": fn.entry,
                "blocks": [
                    {
                        "id": b.block_id,
                        "label": b.label,
                        "instrs": [{"op": type(i).__name__, **_clean(asdict(i))} for i in b.instrs],
                    }
                    for b in fn.blocks.values()
                ],
            }
        return {
            "domains": list(self.domains),
            "settings": _clean(dict(self.settings)),
            "functions": [_fn(f) for f in self.all_functions()],
        }


def _clean(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _clean(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(v) for v in value]
    return value
