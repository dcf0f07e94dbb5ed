"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    AppSchema,
    PolicySchema,
    load_app_config,
    load_policy_config,
    validate_all_configs,
    validate_app,
    validate_policy,
)

REPO_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


def write_configs(config_dir: Path, app: dict = None, policy: dict = None):
    """Helper to write app.yaml/policy.yaml into a temp config dir."""
    config_dir.mkdir(parents=True, exist_ok=True)
    with open(config_dir / "app.yaml", "w") as f:
        yaml.dump(app or {}, f)
    with open(config_dir / "policy.yaml", "w") as f:
        yaml.dump(policy or {}, f)
    return config_dir


class TestPolicyValidation:
    """Test policy.yaml validation"""

    def test_shipped_configs_are_valid(self):
        assert validate_all_configs(str(REPO_CONFIG_DIR)) == []

    def test_empty_policy_uses_defaults(self, tmp_path):
        write_configs(tmp_path)

        assert validate_policy(tmp_path) == []
        policy = load_policy_config(str(tmp_path))
        assert policy["hedge"]["target_ratio"] == 0.5
        assert policy["reconcile"]["keep_policy"] == "oldest"

    @pytest.mark.parametrize("section,values,field", [
        ("hedge", {"target_ratio": 1.2}, "target_ratio"),
        ("hedge", {"rebalance_threshold": 0}, "rebalance_threshold"),
        ("hedge", {"max_short_usd": -1}, "max_short_usd"),
        ("hedge", {"whitelist": ["SOL", " "]}, "whitelist"),
        ("reconcile", {"keep_policy": "newest"}, "keep_policy"),
        ("reconcile", {"cost_basis_tolerance_usd": -0.5}, "cost_basis_tolerance_usd"),
        ("monitor", {"strategy_caps": {"polymarket": 1.5}}, "strategy_caps"),
        ("monitor", {"stop_loss_pct": 0}, "stop_loss_pct"),
    ])
    def test_invalid_values_reported_with_field_path(self, tmp_path, section, values, field):
        write_configs(tmp_path, policy={section: values})

        errors = validate_policy(tmp_path)

        assert len(errors) == 1
        assert errors[0].startswith(f"policy.yaml: {section} -> {field}")

    def test_missing_file(self, tmp_path):
        errors = validate_policy(tmp_path)

        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml_reports_line(self, tmp_path):
        write_configs(tmp_path)
        (tmp_path / "policy.yaml").write_text("hedge:\n  target_ratio: [0.5\n")

        errors = validate_policy(tmp_path)

        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]
        assert "line" in errors[0]

    def test_top_level_list_rejected(self, tmp_path):
        write_configs(tmp_path)
        (tmp_path / "policy.yaml").write_text("- hedge\n- reconcile\n")

        errors = validate_policy(tmp_path)

        assert len(errors) == 1
        assert "mapping" in errors[0]


class TestAppValidation:
    def test_defaults(self):
        app = AppSchema()

        assert app.app.mode == "DRY_RUN"
        assert app.ledger.store == "sqlite"
        assert app.venues.fetch_timeout_seconds == 20.0
        assert app.monitoring.metrics_port == 9108

    def test_invalid_mode_and_store(self, tmp_path):
        write_configs(tmp_path, app={"app": {"mode": "PAPER"}, "ledger": {"store": "postgres"}})

        errors = validate_app(tmp_path)

        assert len(errors) == 2

    def test_unknown_venue_key_rejected(self, tmp_path):
        write_configs(tmp_path, app={"venues": {"polymarket": {"strategy_id": "pm", "api_key": "x"}}})

        errors = validate_app(tmp_path)

        assert any("api_key" in e for e in errors)

    def test_venue_requires_strategy_id(self, tmp_path):
        write_configs(tmp_path, app={"venues": {"hyperliquid": {"enabled": True}}})

        assert validate_app(tmp_path) != []

    def test_load_app_config_fills_defaults(self, tmp_path):
        write_configs(tmp_path, app={"ledger": {"store": "json", "path": "data/p.json"}})

        app = load_app_config(str(tmp_path))

        assert app["ledger"] == {"store": "json", "path": "data/p.json"}
        assert app["venues"]["polymarket"] is None
        assert app["audit"]["file"] == "logs/audit.jsonl"


def test_policy_schema_model_dump_round_trips_into_schema():
    dumped = PolicySchema(hedge={"whitelist": ["SOL"]}).model_dump()

    assert PolicySchema(**dumped).hedge.whitelist == ["SOL"]
