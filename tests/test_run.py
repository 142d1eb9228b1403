"""
Unit tests for run.py helper behavior.
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

import run
from config import Config
from report.store import LedgerStore
from scanner.models import PerformanceRecord
from state.checkpoint import CheckpointManager


def _make_cfg(tmp_path, **kw):
    return Config(
        _env_file=None,
        state_db_path=str(tmp_path / "state.db"),
        ledger_db_path=str(tmp_path / "ledger.db"),
        **kw,
    )


class TestParseArgs:
    def test_default_command_is_run(self):
        args = run.parse_args([])
        assert args.command == "run"
        assert args.live is False

    def test_ledger_range(self):
        args = run.parse_args(["ledger", "--start", "900", "--end", "1800"])
        assert (args.command, args.start, args.end) == ("ledger", 900.0, 1800.0)

    def test_flatten_requires_id(self):
        with pytest.raises(SystemExit):
            run.parse_args(["flatten"])
        assert run.parse_args(["flatten", "btc:buy:1"]).opportunity_id == "btc:buy:1"

    def test_live_and_dry_run_conflict(self):
        with pytest.raises(SystemExit):
            run.parse_args(["--live", "--dry-run"])


class TestApplyOverrides:
    def test_live_disables_dry_run(self, tmp_path):
        cfg = run.apply_overrides(_make_cfg(tmp_path), run.parse_args(["--live"]))
        assert cfg.dry_run is False

    def test_dry_run_flag(self, tmp_path):
        cfg = run.apply_overrides(_make_cfg(tmp_path, dry_run=False), run.parse_args(["--dry-run"]))
        assert cfg.dry_run is True

    def test_no_flags_keeps_env(self, tmp_path):
        base = _make_cfg(tmp_path, dry_run=False)
        assert run.apply_overrides(base, run.parse_args([])) is base


class TestCmdLedger:
    def test_prints_records_and_summary(self, tmp_path, capsys):
        cfg = _make_cfg(tmp_path)
        store = LedgerStore(cfg.ledger_db_path)
        store.append(PerformanceRecord(1_700_000_900.0, "btc:buy:1", 0.3, 0.01, True))
        store.append(PerformanceRecord(1_700_001_800.0, "btc:buy:2", -0.1, 0.01, True))
        store.close()

        assert run.cmd_ledger(cfg, None, None) == 0
        out = capsys.readouterr().out
        assert "btc:buy:1" in out
        assert "2 record(s)" in out
        assert "total=$0.2000" in out

    def test_range_filter(self, tmp_path, capsys):
        cfg = _make_cfg(tmp_path)
        store = LedgerStore(cfg.ledger_db_path)
        store.append(PerformanceRecord(1_700_000_900.0, "early", 0.3, 0.0, True))
        store.close()
        run.cmd_ledger(cfg, 1_700_001_000.0, None)
        assert "0 record(s)" in capsys.readouterr().out


class TestCmdPositions:
    @patch("run.httpx.get", side_effect=httpx.ConnectError("refused"))
    def test_falls_back_to_checkpoint(self, _get, tmp_path, capsys):
        cfg = _make_cfg(tmp_path)
        component = MagicMock()
        component.to_dict.return_value = {"positions": [{"opportunity_id": "btc:buy:1"}]}
        mgr = CheckpointManager(cfg.state_db_path)
        mgr.register("engine", component)
        mgr.save_all()
        mgr.close()

        assert run.cmd_positions(cfg) == 0
        out = capsys.readouterr().out
        assert "1 open position(s) [checkpoint]" in out
        assert "btc:buy:1" in out

    @patch("run.httpx.get")
    def test_reads_live_api(self, get, tmp_path, capsys):
        get.return_value.json.return_value = []
        assert run.cmd_positions(_make_cfg(tmp_path)) == 0
        assert "[live]" in capsys.readouterr().out


class TestCmdFlatten:
    @patch("run.httpx.post", side_effect=httpx.ConnectError("refused"))
    def test_api_unavailable(self, _post, tmp_path):
        assert run.cmd_flatten(_make_cfg(tmp_path), "btc:buy:1") == 1

    @patch("run.httpx.post")
    def test_unknown_position(self, post, tmp_path):
        post.return_value.status_code = 404
        assert run.cmd_flatten(_make_cfg(tmp_path), "nope") == 1

    @patch("run.httpx.post")
    def test_success(self, post, tmp_path, capsys):
        post.return_value.status_code = 200
        post.return_value.json.return_value = {"opportunity_id": "x", "orders": [{}, {}]}
        assert run.cmd_flatten(_make_cfg(tmp_path), "x") == 0
        assert "2 order(s)" in capsys.readouterr().out


class TestCmdRun:
    def test_live_requires_credentials(self, tmp_path):
        cfg = _make_cfg(tmp_path, dry_run=False)
        assert run.cmd_run(cfg) == 1
