from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

from prprism import __version__
from prprism.cli import main
from prprism.github import GitHubAPIError


def test_cli_help_lists_commands():
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("init", "scan", "dupes", "rank", "vision", "review", "triage",
                    "reembed", "reset", "status", "report"):
        assert command in result.output


def test_cli_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_writes_sample_files():
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert Path("prism.yml").read_text().startswith("# Prism Configuration")
        assert "GITHUB_TOKEN=" in Path(".env").read_text()
        assert Path(".env.example").exists()

        Path("prism.yml").write_text("repo: acme/widgets\n")
        again = runner.invoke(main, ["init"])
        assert "Skipped" in again.output
        assert Path("prism.yml").read_text() == "repo: acme/widgets\n"

        forced = runner.invoke(main, ["init", "--force"])
        assert forced.exit_code == 0
        assert Path("prism.yml").read_text().startswith("# Prism Configuration")


def test_scan_without_config_fails_cleanly():
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(main, ["scan"])
        assert result.exit_code == 1
        assert "Config file not found" in result.output


def test_reembed_without_database():
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(main, ["reembed"])
        assert result.exit_code == 1
        assert "No database found" in result.output


def test_reset_deletes_database():
    runner = CliRunner()
    with runner.isolated_filesystem():
        db = Path("data") / "prism.db"
        db.parent.mkdir()
        db.write_bytes(b"")
        Path("data/prism.db-wal").write_bytes(b"")

        result = runner.invoke(main, ["reset", "-y"])

        assert result.exit_code == 0
        assert not db.exists()
        assert not Path("data/prism.db-wal").exists()


def test_reset_can_be_cancelled():
    runner = CliRunner()
    with runner.isolated_filesystem():
        db = Path("data") / "prism.db"
        db.parent.mkdir()
        db.write_bytes(b"")

        result = runner.invoke(main, ["reset"], input="n\n")

        assert "Cancelled" in result.output
        assert db.exists()


def test_reset_without_database():
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(main, ["reset", "-y"])
        assert result.exit_code == 0
        assert "No database found" in result.output


def test_unknown_command():
    result = CliRunner().invoke(main, ["plan"])
    assert result.exit_code != 0
    assert "No such command 'plan'" in result.output


def test_status_leaves_empty_database_untouched():
    runner = CliRunner()
    with runner.isolated_filesystem():
        Path("prism.yml").write_text("repo: acme/widgets\n")
        db = Path("data") / "prism.db"
        db.parent.mkdir()
        db.write_bytes(b"")

        with patch("prprism.cli.GitHubClient") as client:
            client.return_value.check_rate_limit.side_effect = GitHubAPIError("offline")
            result = runner.invoke(
                main, ["status"], env={"GITHUB_TOKEN": "t", "EMBEDDING_PROVIDER": "openai"}
            )

        assert result.exit_code == 0, result.output
        assert "Total:    0 items" in result.output
        assert "Vectors:  ? dims" in result.output
        assert db.read_bytes() == b""
