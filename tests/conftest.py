"""
Test configuration and fixtures for the PNL test suite.
"""
import sys
import pytest
from pathlib import Path
from typing import Any, Callable, Dict, List

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pnl.config import EngineConfig
from pnl.domains import DomainPack, DomainRegistry
from pnl.providers import LocalProvider
from pnl.runtime import Runtime


EXAMPLE_PROGRAM = """
#DOMAIN=legal,medical        // directives come first: #KEY=value
#RETRIES=2
#TIMEOUT=30s

DEF triage(x): IF x > 65 @p=0.8 → admit(x) ELIF x > 30 → observe(x) ELSE → discharge(x)

DEF review(doc) {
    CHECKPOINT @retries=2 {
        summary = summarize(doc) @timeout=10s
        GATE len(summary) > 0
    } RECOVER {
        summary = "unavailable"
    }
    PARALLEL ALL @timeout=30s {
        → risk = legal.assess(summary) @timeout=20s
        → cost = estimate(summary)
    } SYNC combine(risk, cost) → verdict
    RETURN verdict
}

result = review("contract.txt")
"""


@pytest.fixture
def example_program() -> str:
    return EXAMPLE_PROGRAM


@pytest.fixture
def legal_pack() -> DomainPack:
    return DomainPack.of("legal", {
        "assess": {"params": ["text"], "description": "Legal risk of a document"},
        "summarize": {"params": ["doc"]},
        "combine": {},
    })


@pytest.fixture
def medical_pack() -> DomainPack:
    return DomainPack.of("medical", ["admit", "observe", "discharge", "estimate"])


@pytest.fixture
def registry(legal_pack, medical_pack) -> DomainRegistry:
    return DomainRegistry([legal_pack, medical_pack])


@pytest.fixture
def config(tmp_path) -> EngineConfig:
    """Deterministic engine settings independent of the environment."""
    return EngineConfig(state_dir=str(tmp_path / "state"))


@pytest.fixture
def make_runtime(config) -> Callable[..., Runtime]:
    """Build runtimes backed by a LocalProvider; all are closed after the test.

    ``functions`` maps a domain name to ``{function name: python callable}``.
    A pack exporting those functions is created for every domain unless
    ``packs`` is given explicitly.
    """
    created: List[Runtime] = []

    def _make(functions: Dict[str, Dict[str, Callable[..., Any]]], packs=None, **kwargs) -> Runtime:
        provider = LocalProvider(functions)
        if packs is None:
            packs = [DomainPack.of(domain, list(table)) for domain, table in functions.items()]
        rt = Runtime(
            provider=provider,
            registry=DomainRegistry(packs),
            config=kwargs.pop("config", config),
            **kwargs,
        )
        created.append(rt)
        return rt

    yield _make
    for rt in created:
        rt.close()


def _run_program(rt: Runtime, source: str, entry=None, args=None, domains=None):
    packs = domains if domains is not None else rt.registry.names()
    return rt.run_source(source, entry=entry, args=args, domains=packs)


@pytest.fixture
def run_program():
    """Compile source against every pack registered on the runtime and run it."""
    return _run_program
