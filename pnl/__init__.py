from .binder import bind
from .config import EngineConfig
from .domains import DomainPack, DomainRegistry, FunctionBinding
from .errors import (
    BindError,
    BindErrorReason,
    CompileError,
    InternalInvariantError,
    LexError,
    LowerError,
    ParseError,
    PNLError,
    ProgramFailure,
    ProviderError,
)
from .lexer import tokenize
from .lowering import lower
from .parser import parse
from .policies import BudgetPolicy, CachePolicy, CallPolicy
from .providers import CallRequest, CapabilityProvider, DryRunProvider, LocalProvider, select_provider
from .runtime import FailureReport, ProgramResult, Runtime
from .types import UNAVAILABLE

__version__ = "0.1.0"
