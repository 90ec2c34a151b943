import pytest
from pydantic import ValidationError

from pnl.config import EngineConfig


class TestEngineConfig:
    """Environment, overrides and per-program directives."""

    def test_defaults(self):
        config = EngineConfig.from_env({})
        assert config.default_retries == 3
        assert config.max_loop_iterations == 1000
        assert config.call_timeout is None
        assert config.max_workers == 16
        assert not config.otel_console

    def test_from_env(self):
        env = {
            "PNL_DEFAULT_RETRIES": "5",
            "PNL_CALL_TIMEOUT": "2.5",
            "PNL_STATE_DIR": "/tmp/pnl",
            "PNL_OTEL_CONSOLE": "yes",
            "PNL_MAX_WORKERS": "",
        }
        config = EngineConfig.from_env(env)
        assert config.default_retries == 5
        assert config.call_timeout == 2.5
        assert config.state_dir == "/tmp/pnl"
        assert config.otel_console
        assert config.max_workers == 16

    def test_overrides_win(self):
        config = EngineConfig.from_env({"PNL_DEFAULT_RETRIES": "5"}, default_retries=0, dry_run=True)
        assert config.default_retries == 0
        assert config.dry_run

    @pytest.mark.parametrize("env", [
        {"PNL_DEFAULT_RETRIES": "-1"},
        {"PNL_MAX_LOOP_ITERATIONS": "0"},
        {"PNL_CALL_TIMEOUT": "soon"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(ValidationError):
            EngineConfig.from_env(env)

    def test_with_directives(self):
        base = EngineConfig(default_retries=3)
        config = base.with_directives({"RETRIES": 1, "TIMEOUT": 30.0, "MAX_ITERATIONS": 50, "DOMAIN": ("legal",)})
        assert (config.default_retries, config.call_timeout, config.max_loop_iterations) == (1, 30.0, 50)
        assert base.default_retries == 3

    def test_no_directives(self):
        base = EngineConfig()
        assert base.with_directives({}) is base

    def test_directive_changes_loop_limit(self, make_runtime, run_program):
        rt = make_runtime({})
        result = run_program(rt, "#MAX_ITERATIONS=3\nn = 0\nWHILE TRUE {\n n = n + 1\n}")
        assert result.failure.kind == "EvaluationFailure"
        assert "3" in result.failure.message
