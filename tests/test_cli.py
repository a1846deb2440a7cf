"""Tests for the studyplan command line."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from studyplan import cli as cli_module
from studyplan.cli import cli
from studyplan.core.mode import PlanningMode
from studyplan.models import PlanResult
from studyplan.planner import PlanOutcome

pytestmark = pytest.mark.unit

_PRICING = """\
version = "test"

[baseline]
model = "flash"

[models.flash]
provider = "gemini"
input_price_per_mtok = 0.075
output_price_per_mtok = 0.30

[models.sonnet]
provider = "claude"
input_price_per_mtok = 3
output_price_per_mtok = 15
"""

_REQUEST = {
    "user_id": "user-1",
    "subject_id": "math",
    "subject_name": "Mathematics",
    "grade_id": "g10",
    "grade_name": "Grade 10",
    "date_range_start": "2026-03-02",
    "date_range_end": "2026-03-08",
    "chapters": [{"chapter_number": 1, "title": "Algebra"}],
    "target_session_count": 2,
}


@pytest.fixture(autouse=True)
def _reset_root_logger():
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    (tmp_path / "pricing.toml").write_text(_PRICING)
    path = tmp_path / "studyplan.toml"
    path.write_text('[planner]\npricing_path = "pricing.toml"\n')
    return path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestPrice:
    def test_reported_cost(self, runner, config_file):
        result = runner.invoke(
            cli,
            ["price", "sonnet", "1800", "700", "--cost", "0.01575", "--config", str(config_file)],
        )

        assert result.exit_code == 0, result.output
        assert "Baseline model:   flash" in result.output
        assert "Baseline cost:    $0.000345" in result.output
        assert "Cost ratio:       45.6522" in result.output
        assert "Adjusted tokens:  114131 (raw 2500)" in result.output

    def test_json_output(self, runner, config_file):
        result = runner.invoke(
            cli,
            [
                "price",
                "sonnet",
                "1800",
                "700",
                "--cost",
                "0.01575",
                "--json",
                "--config",
                str(config_file),
            ],
        )

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["baseline_model"] == "flash"
        assert payload["cost_ratio"] == "45.6522"
        assert payload["adjusted_token_count"] == 114131

    def test_cost_estimated_from_table(self, runner, config_file):
        result = runner.invoke(
            cli, ["price", "sonnet", "1800", "700", "--json", "--config", str(config_file)]
        )

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["actual_cost_usd"] == "0.0159"
        assert payload["cost_ratio"] == "46.0870"
        assert payload["adjusted_token_count"] == 115218

    def test_baseline_model_is_not_inflated(self, runner, config_file):
        result = runner.invoke(
            cli, ["price", "flash", "1800", "700", "--json", "--config", str(config_file)]
        )

        payload = json.loads(result.output)
        assert payload["cost_ratio"] == "1.0000"
        assert payload["adjusted_token_count"] == 2500

    def test_unpriced_model_needs_cost(self, runner, config_file):
        result = runner.invoke(cli, ["price", "mystery", "10", "10", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "not in the pricing table" in result.output

    def test_zero_tokens_is_degenerate(self, runner, config_file):
        result = runner.invoke(
            cli, ["price", "sonnet", "0", "0", "--cost", "0.01", "--config", str(config_file)]
        )
        assert result.exit_code == 1

    def test_invalid_cost(self, runner, config_file):
        result = runner.invoke(
            cli, ["price", "sonnet", "1", "1", "--cost", "lots", "--config", str(config_file)]
        )
        assert result.exit_code == 1
        assert "Invalid --cost value" in result.output

    def test_negative_tokens_rejected(self, runner, config_file):
        result = runner.invoke(cli, ["price", "sonnet", "-5", "1", "--config", str(config_file)])
        assert result.exit_code == 2


class TestModels:
    def test_lists_priced_models(self, runner, config_file):
        result = runner.invoke(cli, ["models", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].split() == ["MODEL", "PROVIDER", "INPUT", "OUTPUT"]
        assert lines[1].startswith("flash")
        assert lines[1].endswith(" *")
        assert "claude" in lines[2]

    def test_config_error_exits_nonzero(self, runner, tmp_path):
        bad = tmp_path / "studyplan.toml"
        bad.write_text("[planner\n")
        result = runner.invoke(cli, ["models", "--config", str(bad)])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestPlan:
    def test_invalid_request_file(self, runner, config_file, tmp_path):
        request = tmp_path / "request.json"
        request.write_text(json.dumps({"user_id": "user-1"}))

        result = runner.invoke(cli, ["plan", str(request), "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Invalid request" in result.output

    def test_request_that_is_not_json(self, runner, config_file, tmp_path):
        request = tmp_path / "request.json"
        request.write_text("{not json")

        result = runner.invoke(cli, ["plan", str(request), "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Invalid request" in result.output

    @pytest.mark.parametrize(
        ("flag", "args", "expected"),
        [
            (None, [], True),
            (None, ["--auto"], False),
            (True, ["--auto"], True),
            ("true", ["--auto"], False),
            (1, ["--auto"], False),
        ],
    )
    def test_agent_opt_in(
        self, runner, config_file, tmp_path, monkeypatch, flag, args, expected
    ):
        seen: dict[str, object] = {}

        async def fake_plan(config, pricing, request, tier, use_agent_mode):
            seen["use_agent_mode"] = use_agent_mode
            return PlanOutcome(PlanningMode.LEGACY, PlanResult(), "flash", "gemini", 0)

        monkeypatch.setattr(cli_module, "_plan", fake_plan)
        payload = dict(_REQUEST)
        if flag is not None:
            payload["use_agent_mode"] = flag
        request = tmp_path / "request.json"
        request.write_text(json.dumps(payload))

        result = runner.invoke(cli, ["plan", str(request), "--config", str(config_file), *args])

        assert result.exit_code == 0, result.output
        assert seen["use_agent_mode"] is expected
        assert "Mode: legacy" in result.output
