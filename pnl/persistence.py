import os
import json
import glob
from typing import Any, Dict, Optional, List
from datetime import datetime

from pydantic import BaseModel, Field


# ─── RunRecord: persisted outcome of one program run ─────────────
class RunRecord(BaseModel):
    """Serializable record of a PNL program run (Pydantic-validated)."""
    program: str
    timestamp: str
    result: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.result.get("ok"))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunRecord':
        return cls.model_validate(data)


class PersistenceManager:
    """Manages saving and loading PNL run results."""

    def __init__(self, base_path: str = "./.pnl_state"):
        self.base_path = base_path

    def save_run(self, name: str, result: Any) -> str:
        """Save a ProgramResult (or plain dict) to disk. Returns the filename."""
        os.makedirs(self.base_path, exist_ok=True)
        safe_name = "".join(c for c in name if c.isalnum() or c in ('-', '_')) or "program"
        timestamp = datetime.now().isoformat().replace(":", "-")
        path = os.path.join(self.base_path, f"{safe_name}_{timestamp}.json")

        data = result.to_dict() if hasattr(result, "to_dict") else dict(result)
        record = RunRecord(program=name, timestamp=timestamp, result=data)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f, indent=2, ensure_ascii=False, default=repr)
        return path

    def load_run(self, path: str) -> RunRecord:
        """Load a run record from a file path."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Run file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError("File content is not a valid RunRecord")
        return RunRecord.from_dict(data)

    def list_runs(self, name_filter: str = "*") -> List[str]:
        """List available run files, sorted by newest first."""
        pattern = os.path.join(self.base_path, f"{name_filter}*.json")
        files = glob.glob(pattern)
        files.sort(key=os.path.getmtime, reverse=True)
        return files

    def get_latest_run(self, name: str) -> Optional[str]:
        """Get the most recent run file for a given program name."""
        files = self.list_runs(name)
        return files[0] if files else None
