"""Tests for the command line interface."""

import json

import pytest

from flowengine.config import LogLevel, get_testing_config
from flowengine.startup import (
    create_argument_parser,
    execute_workflow_file,
    load_configuration,
    run_database_command,
)
from flowengine.storage.database import get_db, reset_database_engine
from flowengine.storage.models import ExecutionModel


@pytest.fixture
def file_config(tmp_path):
    config = get_testing_config().model_copy(update={"database_url": f"sqlite:///{tmp_path / 'cli.db'}"})
    yield config
    reset_database_engine()


class TestArguments:

    def test_flags_override_preset(self):
        """Command line flags win over the selected preset."""
        args = create_argument_parser().parse_args(
            ["--env", "testing", "--port", "9100", "--log-level", "DEBUG", "config", "show"]
        )

        config = load_configuration(args)

        assert config.port == 9100
        assert config.log_level == LogLevel.DEBUG
        assert config.database_url == "sqlite:///:memory:"

    def test_invalid_override_is_rejected(self):
        args = create_argument_parser().parse_args(["--env", "testing", "--max-concurrent-executions", "-3"])

        with pytest.raises(ValueError):
            load_configuration(args)


class TestCommands:

    def test_execute_definition_file(self, tmp_path, file_config, capsys):
        """``execute`` runs a definition file and prints the final record."""
        definition = {
            "name": "cli-run",
            "nodes": [
                {"id": "a", "type": "INPUT", "config": {"value": 2}},
                {"id": "b", "type": "INPUT", "config": {"value": 5}},
                {"id": "product", "type": "MULTIPLY"},
            ],
            "edges": [{"source": "a", "target": "product"}, {"source": "b", "target": "product"}],
        }
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps(definition))

        exit_code = execute_workflow_file(file_config, str(path), timeout=10)

        assert exit_code == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["status"] == "COMPLETED"
        assert printed["finalResult"] == 10

    def test_execute_failing_definition(self, tmp_path, file_config, capsys):
        definition = {
            "name": "cli-fail",
            "nodes": [{"id": "div", "type": "DIVIDE", "inputs": {"a": 1, "b": 0}}],
        }
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps(definition))

        assert execute_workflow_file(file_config, str(path), timeout=10) == 1
        assert json.loads(capsys.readouterr().out)["status"] == "FAILED"

    def test_db_reset_and_cleanup(self, file_config, capsys):
        run_database_command("reset", file_config)
        run_database_command("cleanup", file_config, days=1)

        assert "Removed 0 executions" in capsys.readouterr().out
        db = next(get_db())
        try:
            assert db.query(ExecutionModel).count() == 0
        finally:
            db.close()
