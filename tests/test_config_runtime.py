"""AppSettings, runtime wiring and the CLI's offline commands."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from devops_flow import cli
from devops_flow.config import AppSettings
from devops_flow.graph.model import Position
from devops_flow.persistence.files import GraphRepository
from devops_flow.runtime import build_runtime


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestAppSettings:
    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DEVOPS_FLOW_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("DEVOPS_FLOW_LOG_LEVEL", "debug")
        monkeypatch.setenv("DEVOPS_FLOW_HTTP_TIMEOUT", "5")
        settings = AppSettings.from_env()
        assert settings.resolved_data_dir == tmp_path
        assert settings.log_level == "DEBUG"
        assert settings.http_timeout == 5.0

    def test_integrations_path_defaults_under_data_dir(self, tmp_path):
        settings = AppSettings(data_dir=tmp_path)
        assert settings.integrations_path == tmp_path / "integrations.json"

    def test_empty_integrations_file_is_unset(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DEVOPS_FLOW_INTEGRATIONS_FILE", "")
        settings = AppSettings(data_dir=tmp_path)
        assert settings.integrations_file is None

    def test_api_key_not_in_repr(self):
        settings = AppSettings(api_key="super-secret")
        assert "super-secret" not in repr(settings)
        assert settings.api_key.get_secret_value() == "super-secret"

    def test_negative_delays_clamped(self):
        assert AppSettings(retry_delay=-1).retry_delay == 0.0


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class TestRuntime:
    @pytest.mark.asyncio
    async def test_components_share_one_store(self, tmp_path):
        (tmp_path / "integrations.json").write_text(json.dumps([
            {"id": "gl", "type": "gitlab", "base_url": "https://gitlab.example.com"},
        ]), encoding="utf-8")
        runtime = build_runtime(AppSettings(data_dir=tmp_path))
        try:
            assert len(runtime.integrations) == 1
            runtime.editor.placement.arm("gitlab")
            node = runtime.editor.pane_clicked(Position(0, 0))
            runtime.store.set_selected_node_id(node.id)
            assert runtime.properties.form.node_id == node.id
            assert runtime.workspace.store is runtime.store
        finally:
            await runtime.aclose()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _run_cli(argv: list[str], data_dir: Path) -> int:
    with patch.object(sys, "argv", ["devops-flow", *argv]), \
            patch.dict("os.environ", {"DEVOPS_FLOW_DATA_DIR": str(data_dir)}):
        with pytest.raises(SystemExit) as exc:
            cli.main()
    return exc.value.code


class TestCli:
    def test_no_command_prints_help(self, tmp_path, capsys):
        assert _run_cli([], tmp_path) == 1
        assert "COMMAND" in capsys.readouterr().out

    def test_graphs_list_and_show(self, tmp_path, capsys):
        GraphRepository(tmp_path).save_graph("flow-1", "Pipeline", [], [], None)

        assert _run_cli(["graphs", "list"], tmp_path) == 0
        assert "Pipeline" in capsys.readouterr().out

        assert _run_cli(["graphs", "show", "flow-1"], tmp_path) == 0
        assert json.loads(capsys.readouterr().out)["name"] == "Pipeline"

    def test_graphs_show_missing_fails(self, tmp_path, capsys):
        assert _run_cli(["graphs", "show", "nope"], tmp_path) == 1
        assert "Flow not found" in capsys.readouterr().err

    def test_graphs_delete(self, tmp_path):
        repo = GraphRepository(tmp_path)
        repo.save_graph("flow-1", "Pipeline", [], [], None)
        assert _run_cli(["graphs", "delete", "flow-1"], tmp_path) == 0
        assert repo.list_graphs() == []

    def test_fetch_unknown_integration(self, tmp_path, capsys):
        assert _run_cli(["fetch", "missing"], tmp_path) == 1
        assert "unknown integration" in capsys.readouterr().err
