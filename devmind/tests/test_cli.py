"""Tests for the devmind command line."""

import json
import sys

import pytest
import yaml
from click.testing import CliRunner
from loguru import logger

from devmind.cli.dm import cli


RICH_BUG_FIX = (
    "Fixed critical bug in auth.ts: a race condition and a memory leak in the token "
    "refresh let expired sessions reach production for every user. The algorithm now "
    "avoids the performance bottleneck, with optimization of lookup complexity, and a "
    "comprehensive, generic, reusable interface for token stores."
)


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI rebinds loguru to the runner's stderr."""
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "devmind.yaml"
    path.write_text(yaml.safe_dump({'capture': {'auto_confirm_types': ['bug_fix']}}))
    return str(path)


def test_classify_json(runner):
    result = runner.invoke(cli, ["classify", "Fixed login bug in auth.ts", "--json"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data['type'] == "bug_fix"
    assert data['confidence'] == 75
    assert "auth.ts" in data['key_elements']['files']


def test_classify_table(runner):
    result = runner.invoke(cli, ["classify", "Fixed login bug in auth.ts"])
    assert result.exit_code == 0, result.output
    assert "bug_fix" in result.output
    assert "Scores" in result.output


def test_classify_from_stdin(runner):
    result = runner.invoke(cli, ["classify", "-", "--json"], input="Fixed login bug in auth.ts")
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)['type'] == "bug_fix"


def test_value_json(runner):
    result = runner.invoke(cli, ["value", RICH_BUG_FIX, "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)['total_score'] == 63


def test_value_rejects_unknown_type(runner):
    result = runner.invoke(cli, ["value", "text", "--type", "gardening"])
    assert result.exit_code != 0


def test_decide_uses_config(runner, config_file):
    """Configured auto-confirm types flip a pending decision to a record."""
    default = runner.invoke(cli, ["decide", RICH_BUG_FIX])
    assert default.exit_code == 0, default.output
    assert "pending" in default.output

    configured = runner.invoke(cli, ["--config", config_file, "decide", RICH_BUG_FIX])
    assert configured.exit_code == 0, configured.output
    assert "auto_record" in configured.output
    assert "security" in configured.output


def test_bad_config_is_reported(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(yaml.safe_dump({'capture': {'high_threshold': 500}}))

    result = runner.invoke(cli, ["--config", str(path), "config", "show"])

    assert result.exit_code == 1
    assert "Error" in result.output


def test_config_show(runner, config_file):
    result = runner.invoke(cli, ["--config", config_file, "config", "show"])

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(result.output)
    assert data['capture']['auto_confirm_types'] == ['bug_fix']
    assert data['capture']['high_threshold'] == 80


def test_identity(runner, tmp_path):
    root = tmp_path / "webapp"
    (root / ".git").mkdir(parents=True)
    (root / "package.json").write_text('{"name": "webapp"}')

    result = runner.invoke(cli, ["identity", str(root)])

    assert result.exit_code == 0, result.output
    assert "webapp" in result.output
    assert "fingerprint" in result.output
