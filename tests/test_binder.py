"""Tests for symbol binding against DEF functions, domain packs and builtins."""

import json

import pytest
from pydantic import ValidationError

from pnl import ast
from pnl.binder import MAIN, SymbolKind, bind
from pnl.domains import DomainPack, DomainRegistry
from pnl.errors import BindError, BindErrorReason
from pnl.parser import parse


def _call(bound, name):
    for node in ast.walk(bound.program):
        if isinstance(node, ast.Call) and node.name == name:
            return bound.resolve(node)
    raise AssertionError(f"no call to {name}")


class TestResolution:
    """Unqualified names bind automatically when exactly one pack exports them."""

    def test_auto_bind(self, example_program, legal_pack, medical_pack):
        bound = bind(parse(example_program), [legal_pack, medical_pack])
        summarize = _call(bound, "summarize")
        assert summarize.kind == SymbolKind.DOMAIN_BINDING
        assert summarize.domain == "legal"
        assert _call(bound, "estimate").domain == "medical"
        assert _call(bound, "len").kind == SymbolKind.BUILTIN
        assert _call(bound, "review").kind == SymbolKind.FUNCTION

    def test_qualified_call(self, legal_pack):
        bound = bind(parse('x = legal.assess("doc")'), legal_pack)
        assert _call(bound, "assess").domain == "legal"

    def test_function_shadows_domain(self, legal_pack):
        bound = bind(parse("DEF assess(t): RETURN t\nx = assess(1)"), [legal_pack])
        assert _call(bound, "assess").kind == SymbolKind.FUNCTION

    def test_domain_shadows_builtin(self):
        pack = DomainPack.of("text", ["len"])
        bound = bind(parse('n = len("abc")'), [pack])
        assert _call(bound, "len").kind == SymbolKind.DOMAIN_BINDING

    def test_variables_resolve_to_their_scope(self):
        bound = bind(parse("DEF f(x): RETURN x\ny = f(1)"))
        names = [n for n in ast.walk(bound.program) if isinstance(n, ast.Name)]
        assert bound.resolve(names[0]).scope == "f"
        assert bound.scope(MAIN).lookup_local("y") is not None

    def test_sync_sees_branch_names(self):
        source = "x = 1\nPARALLEL ALL {\n → a = collect(x)\n} SYNC collect(a, x) → out"
        bound = bind(parse(source))
        scopes = [name for name in bound.scopes if "/fork@" in name]
        assert len(scopes) == 1
        assert "a" in bound.scope(scopes[0])

    def test_bind_is_idempotent(self, example_program, legal_pack, medical_pack):
        program = parse(example_program)
        first = bind(program, [legal_pack, medical_pack])
        assert bind(program, [legal_pack, medical_pack]) == first
        assert bind(first, [legal_pack, medical_pack]) == first


class TestBindErrors:

    def test_ambiguous_name_is_domain_conflict(self):
        a = DomainPack.of("legal", ["assess"])
        b = DomainPack.of("medical", ["assess"])
        with pytest.raises(BindError) as exc:
            bind(parse("x = assess(1)"), [a, b])
        assert exc.value.reason == BindErrorReason.DOMAIN_CONFLICT
        assert "legal" in str(exc.value) and "medical" in str(exc.value)
        assert exc.value.line == 1

    def test_qualifying_resolves_conflict(self):
        a = DomainPack.of("legal", ["assess"])
        b = DomainPack.of("medical", ["assess"])
        bound = bind(parse("x = medical.assess(1)"), [a, b])
        assert _call(bound, "assess").domain == "medical"

    def test_unknown_domain(self, legal_pack):
        with pytest.raises(BindError) as exc:
            bind(parse("x = finance.assess(1)"), [legal_pack])
        assert exc.value.reason == BindErrorReason.UNKNOWN_DOMAIN

    def test_inactive_pack_is_invisible(self, legal_pack):
        with pytest.raises(BindError) as exc:
            bind(parse("x = admit(1)"), [legal_pack])
        assert exc.value.reason == BindErrorReason.UNDEFINED_SYMBOL

    def test_arity_mismatch(self, legal_pack):
        with pytest.raises(BindError) as exc:
            bind(parse("x = legal.summarize(1, 2)"), [legal_pack])
        assert exc.value.reason == BindErrorReason.ARITY_MISMATCH

    def test_function_arity_mismatch(self):
        with pytest.raises(BindError) as exc:
            bind(parse("DEF f(a, b): RETURN a\nx = f(1)"))
        assert exc.value.reason == BindErrorReason.ARITY_MISMATCH

    def test_main_variables_invisible_in_functions(self):
        with pytest.raises(BindError) as exc:
            bind(parse("y = 1\nDEF f(): RETURN y"))
        assert exc.value.reason == BindErrorReason.UNDEFINED_SYMBOL
        assert exc.value.symbol == "y"

    def test_variable_is_not_callable(self):
        with pytest.raises(BindError) as exc:
            bind(parse("x = 1\ny = x(2)"))
        assert exc.value.reason == BindErrorReason.NOT_CALLABLE

    def test_function_used_as_variable(self):
        with pytest.raises(BindError) as exc:
            bind(parse("DEF f(): RETURN 1\nx = f"))
        assert exc.value.reason == BindErrorReason.UNDEFINED_SYMBOL

    def test_duplicate_function(self):
        with pytest.raises(BindError) as exc:
            bind(parse("DEF f(): RETURN 1\nDEF f(): RETURN 2"))
        assert exc.value.reason == BindErrorReason.DUPLICATE_DEFINITION

    def test_break_outside_loop(self):
        with pytest.raises(BindError) as exc:
            bind(parse("IF TRUE → BREAK"))
        assert exc.value.reason == BindErrorReason.MISPLACED_STATEMENT

    def test_abort_loop_gate_outside_loop(self):
        with pytest.raises(BindError) as exc:
            bind(parse("GATE TRUE @on_fail=abort_loop"))
        assert exc.value.reason == BindErrorReason.MISPLACED_STATEMENT

    def test_call_in_sync_arguments(self):
        source = "PARALLEL ALL {\n → a = collect(1)\n} SYNC collect(len(a))"
        with pytest.raises(BindError) as exc:
            bind(parse(source))
        assert exc.value.reason == BindErrorReason.MISPLACED_STATEMENT

    def test_duplicate_branch_name(self):
        source = "PARALLEL ALL {\n → a = collect(1)\n → a = collect(2)\n} SYNC collect(a)"
        with pytest.raises(BindError) as exc:
            bind(parse(source))
        assert exc.value.reason == BindErrorReason.DUPLICATE_DEFINITION

    def test_two_packs_with_one_name(self):
        a = DomainPack.of("legal", ["assess"])
        b = DomainPack.of("legal", ["summarize"])
        with pytest.raises(BindError) as exc:
            bind(parse("x = 1"), [a, b])
        assert exc.value.reason == BindErrorReason.DOMAIN_CONFLICT


class TestDomainPacks:

    def test_pack_forms(self, legal_pack):
        assert legal_pack.get("assess").params == ("text",)
        assert legal_pack.get("assess").arity == 1
        assert legal_pack.get("combine").arity is None
        assert legal_pack.exports("summarize")
        assert not legal_pack.exports("admit")

    def test_pack_is_immutable(self, legal_pack):
        with pytest.raises(ValidationError):
            legal_pack.name = "other"

    def test_binding_must_belong_to_pack(self):
        with pytest.raises(ValidationError):
            DomainPack(name="legal", functions={"assess": {"name": "assess", "domain": "medical"}})

    def test_registry_lookup(self, registry):
        assert registry.names() == ["legal", "medical"]
        assert "legal" in registry
        assert [p.name for p in registry.resolve(["medical"])] == ["medical"]
        with pytest.raises(BindError) as exc:
            registry.lookup("finance")
        assert exc.value.reason == BindErrorReason.UNKNOWN_DOMAIN

    def test_registry_load_file(self, tmp_path):
        path = tmp_path / "packs.json"
        path.write_text(json.dumps([
            {"name": "legal", "functions": ["assess"]},
            {"name": "billing", "functions": {"charge": {"params": ["amount"], "timeout": 2}}},
        ]), encoding="utf-8")
        registry = DomainRegistry()
        loaded = registry.load_file(path)
        assert [p.name for p in loaded] == ["legal", "billing"]
        assert registry.lookup("billing").get("charge").timeout == 2.0
