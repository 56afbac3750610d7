import logging

import pytest
import yaml

from db_truncator import cli
from fakes import FakeDatabase


class DummyEngine:
    def __init__(self, uri):
        self.uri = uri
        self.disposed = False

    def dispose(self):
        self.disposed = True


@pytest.fixture
def run_cli(tmp_path, monkeypatch):
    for key in ("DATABASE_CONNECTION_STRING", "DB_URI", "REPLICA_URI", "DRY_RUN", "ASSUME_YES"):
        monkeypatch.delenv(key, raising=False)
    root = logging.getLogger()
    saved = list(root.handlers)

    engines = []
    db = FakeDatabase({"public.customers": 3, "public.orders": 4})

    def fake_engine(uri, **kw):
        engines.append(DummyEngine(uri))
        return engines[-1]

    monkeypatch.setattr(cli, "create_engine", fake_engine)
    monkeypatch.setattr(cli, "PgClient", lambda *a, **kw: db)

    def run(**overrides):
        cfg = {
            "db_uri": "postgresql://x/db",
            "log_file": str(tmp_path / "truncator.log"),
            "log_console": False,
            "poll_interval": 0.01,
            "progress_interval": 0.05,
            "tables": [{"name": "customers"}, {"name": "orders", "parent": "customers"}],
        }
        cfg.update(overrides)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
        monkeypatch.setenv("DB_TRUNCATOR_CONFIG", str(path))
        cli.main()

    yield run, db, engines

    for h in root.handlers:
        h.close()
    root.handlers[:] = saved


def test_dry_run_only_counts(run_cli, capsys):
    run, db, engines = run_cli
    run()
    out = capsys.readouterr().out
    assert "[DRY-RUN] Would delete 4 rows from public.orders." in out
    assert db.deletes == []
    assert all(e.disposed for e in engines)


def test_declined_prompt_aborts(run_cli, monkeypatch, capsys):
    run, db, _ = run_cli
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    run(dry_run=False)
    assert "Aborted." in capsys.readouterr().out
    assert db.deletes == []


def test_assume_yes_deletes_everything(run_cli):
    run, db, engines = run_cli
    run(dry_run=False, assume_yes=True, replica_uri="postgresql://replica/db")
    assert db.deletes == ["public.orders", "public.customers"]
    assert [e.uri for e in engines] == ["postgresql://x/db", "postgresql://replica/db"]


def test_failed_delete_exits_with_error(run_cli):
    run, db, _ = run_cli
    db.fail["public.orders"] = 1
    with pytest.raises(SystemExit) as exc:
        run(dry_run=False, assume_yes=True)
    assert exc.value.code == 1
