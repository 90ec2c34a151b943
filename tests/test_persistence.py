import json
import os

import pytest

from pnl.persistence import PersistenceManager, RunRecord


class TestPersistence:

    @pytest.fixture(autouse=True)
    def persist_dir(self, tmp_path):
        self.persist_dir = str(tmp_path / "runs")

    def test_manager_save_load(self):
        pm = PersistenceManager(base_path=self.persist_dir)
        path = pm.save_run("triage", {"ok": True, "value": "admit 70"})
        assert os.path.exists(path)
        assert os.path.basename(path).startswith("triage_")

        record = pm.load_run(path)
        assert isinstance(record, RunRecord)
        assert record.program == "triage"
        assert record.ok
        assert record.result["value"] == "admit 70"

    def test_directory_created_on_save(self):
        pm = PersistenceManager(base_path=self.persist_dir)
        assert not os.path.exists(self.persist_dir)
        assert pm.list_runs() == []
        pm.save_run("p", {"ok": False})
        assert os.path.isdir(self.persist_dir)

    def test_unsafe_names_sanitized(self):
        pm = PersistenceManager(base_path=self.persist_dir)
        path = pm.save_run("../<main>", {"ok": True})
        assert os.path.dirname(path) == self.persist_dir
        assert os.path.basename(path).startswith("main_")

    def test_list_and_latest(self):
        pm = PersistenceManager(base_path=self.persist_dir)
        first = pm.save_run("review", {"ok": True, "value": 1})
        second = pm.save_run("review", {"ok": True, "value": 2})
        other = pm.save_run("triage", {"ok": True})
        os.utime(first, (1_000_000, 1_000_000))

        runs = pm.list_runs("review")
        assert set(runs) == {first, second}
        assert runs[-1] == first
        assert pm.get_latest_run("review") == second
        assert pm.get_latest_run("triage") == other
        assert pm.get_latest_run("missing") is None
        assert len(pm.list_runs()) == 3

    def test_load_missing(self):
        pm = PersistenceManager(base_path=self.persist_dir)
        with pytest.raises(FileNotFoundError):
            pm.load_run(os.path.join(self.persist_dir, "nope.json"))

    def test_load_invalid_content(self):
        os.makedirs(self.persist_dir)
        path = os.path.join(self.persist_dir, "bad.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(["not", "a", "record"], f)
        with pytest.raises(ValueError):
            PersistenceManager(base_path=self.persist_dir).load_run(path)

    def test_runtime_save(self, make_runtime, run_program):
        rt = make_runtime({"svc": {"f": lambda: [1, 2]}})
        result = run_program(rt, "x = f()\nRETURN x")
        path = rt.save(result, name="listing")
        record = rt.persistence.load_run(path)
        assert record.ok
        assert record.result["value"] == [1, 2]
        assert record.result["entry"] == "<main>"
        assert any(r["kind"] == "call" for r in record.result["trace"])

    def test_failed_run_saved(self, make_runtime, run_program):
        rt = make_runtime({})
        result = run_program(rt, "x = 1 / 0")
        record = rt.persistence.load_run(rt.save(result))
        assert not record.ok
        assert record.result["failure"]["kind"] == "EvaluationFailure"
        assert record.program == "program"
