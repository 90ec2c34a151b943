from __future__ import annotations
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

# ─── EngineConfig: runtime limits and defaults ───────────────────


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class EngineConfig(BaseModel):
    """Engine-wide settings; directives in the program override them per run."""
    default_retries: int = Field(default=3, ge=0)
    max_loop_iterations: int = Field(default=1000, ge=1)
    max_call_depth: int = Field(default=100, ge=1)
    call_timeout: Optional[float] = Field(default=None, ge=0.0)
    max_workers: int = Field(default=16, ge=1)
    state_dir: str = ".pnl_state"
    otel_console: bool = False
    dry_run: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides: Any) -> "EngineConfig":
        env = os.environ if env is None else env
        values: Dict[str, Any] = {}
        mapping = {
            "PNL_DEFAULT_RETRIES": "default_retries",
            "PNL_MAX_LOOP_ITERATIONS": "max_loop_iterations",
            "PNL_MAX_CALL_DEPTH": "max_call_depth",
            "PNL_CALL_TIMEOUT": "call_timeout",
            "PNL_MAX_WORKERS": "max_workers",
            "PNL_STATE_DIR": "state_dir",
        }
        for var, key in mapping.items():
            if env.get(var):
                values[key] = env[var]
        if "PNL_OTEL_CONSOLE" in env:
            values["otel_console"] = _env_flag(env["PNL_OTEL_CONSOLE"])
        values.update(overrides)
        return cls.model_validate(values)

    def with_directives(self, settings: Mapping[str, Any]) -> "EngineConfig":
        """Apply ``#RETRIES``, ``#TIMEOUT`` and ``#MAX_ITERATIONS`` from a program."""
        update: Dict[str, Any] = {}
        if settings.get("RETRIES") is not None:
            update["default_retries"] = settings["RETRIES"]
        if settings.get("TIMEOUT") is not None:
            update["call_timeout"] = settings["TIMEOUT"]
        if settings.get("MAX_ITERATIONS") is not None:
            update["max_loop_iterations"] = settings["MAX_ITERATIONS"]
        return self.model_copy(update=update) if update else self
