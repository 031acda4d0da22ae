from typer.testing import CliRunner
from bulkrecon.main import app

runner = CliRunner()

def test_help_shows_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "tools-policy" in result.stdout
    assert "move-users" in result.stdout
    assert "disable-plans" in result.stdout
    assert "group-compare" in result.stdout

def test_move_users_requires_scope(tmp_path):
    result = runner.invoke(
        app,
        ["--log-dir", str(tmp_path / "logs"), "--report-dir", str(tmp_path / "reports"), "move-users", "--target", "OU=X"],
    )
    assert result.exit_code == 2

def test_invalid_env_setting_exit_2(tmp_path, monkeypatch):
    monkeypatch.setenv("BULKRECON_TLS_SKIP_VERIFY", "perhaps")
    result = runner.invoke(app, ["--log-dir", str(tmp_path), "group-compare", "--group", "A", "--group", "B"])
    assert result.exit_code == 2

def test_missing_connection_settings_exit_2_without_report(tmp_path, monkeypatch):
    for name in ("BULKRECON_VSPHERE_HOST", "BULKRECON_VSPHERE_USERNAME", "BULKRECON_VSPHERE_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    reportDir = tmp_path / "reports"
    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(reportDir),
            "--vsphere-password", "TOP_SECRET",
            "tools-policy", "--scope", "DC1", "--target", "manual",
        ],
    )
    assert result.exit_code == 2
    assert "missing settings" in result.output
    assert "TOP_SECRET" not in result.output
    assert list(reportDir.glob("*.json")) == []
