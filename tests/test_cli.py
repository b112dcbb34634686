import json
from pathlib import Path

from typer.testing import CliRunner

from caresync.cli.main import app

runner = CliRunner()


def _write_config(tmp_path: Path, extra: list[str]) -> Path:
    runtime_dir = tmp_path / "runtime"
    path = tmp_path / "config.yaml"
    path.write_text(
        "\n".join(
            [
                "logging:",
                f"  file: {runtime_dir / 'service.log'}",
                "  audit_file: ''",
                "database:",
                f"  path: {runtime_dir / 'sync.db'}",
                "credentials:",
                f"  encryption_key_file: {runtime_dir / 'credential.key'}",
                *extra,
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    return path


def test_config_show_prints_json(tmp_path: Path):
    path = _write_config(tmp_path, ["web_port: 9100"])

    result = runner.invoke(app, ["config-show", "--path", str(path)])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["web_port"] == 9100


def test_config_validate_passes_for_memory_store(tmp_path: Path):
    path = _write_config(tmp_path, [])

    result = runner.invoke(app, ["config-validate", "--path", str(path), "--strict"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["ok"] is True
    assert "memory_store_is_process_local" in payload["warnings"]


def test_config_validate_strict_fails_for_incomplete_rest_store(tmp_path: Path):
    path = _write_config(tmp_path, ["store:", "  backend: rest"])

    result = runner.invoke(app, ["config-validate", "--path", str(path), "--strict"])

    assert result.exit_code == 2
    payload = json.loads(result.stdout)
    assert payload["ok"] is False
    assert "rest_store_requires_base_url_and_api_key" in payload["errors"]


def test_config_validate_rejects_malformed_allowed_nets(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("CARESYNC_ALLOWED_NETS", raising=False)
    path = _write_config(tmp_path, ["web_allowed_nets:", "  - 10.0.0.0/33"])

    result = runner.invoke(app, ["config-validate", "--path", str(path), "--strict"])

    assert result.exit_code == 2
    payload = json.loads(result.stdout)
    assert payload["checks"]["allowed_nets_valid"] is False
    assert "invalid_allowed_net: 10.0.0.0/33" in payload["errors"]
