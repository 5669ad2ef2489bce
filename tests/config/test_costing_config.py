"""Tests for costing_config: defaults, operator overrides, validation, checksum."""

import logging

import pytest
import yaml

from costing_config import DEFAULTS_PATH, get_active_config
from costing_config.loader import compute_checksum, merge_settings, parse_config


def _write(tmp_path, data) -> str:
    path = tmp_path / "costing.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestDefaults:

    def test_packaged_defaults(self):
        config = get_active_config()

        assert config.policy.same_day_lots_eligible is True
        assert config.policy.repair_zero_cost_sales is True
        assert config.locking.timeout_seconds == 30
        assert config.database.url.startswith("postgresql://")
        assert config.sources == (str(DEFAULTS_PATH),)
        assert len(config.checksum) == 64

    def test_load_is_logged_with_checksum(self, captured_logs):
        config = get_active_config()

        loaded = [r for r in captured_logs() if r["message"] == "costing_config_loaded"]
        assert loaded[-1]["checksum"] == config.checksum


class TestOverrides:

    def test_operator_file_overrides_one_key(self, tmp_path):
        path = _write(tmp_path, {"costing": {"same_day_lots_eligible": False}})

        config = get_active_config(path)

        assert config.policy.same_day_lots_eligible is False
        assert config.policy.repair_zero_cost_sales is True
        assert config.sources[-1] == path

    def test_override_changes_checksum(self, tmp_path):
        base = get_active_config()
        changed = get_active_config(_write(tmp_path, {"locking": {"timeout_seconds": 5}}))

        assert base.checksum != changed.checksum

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")

    def test_empty_file_keeps_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert get_active_config(path).checksum == get_active_config().checksum


class TestValidation:

    def test_unknown_section(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown configuration sections"):
            get_active_config(_write(tmp_path, {"metrics": {"enabled": True}}))

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown keys"):
            get_active_config(_write(tmp_path, {"costing": {"same_day": True}}))

    @pytest.mark.parametrize("section,values", [
        ("locking", {"timeout_seconds": 0}),
        ("database", {"pool_size": 0}),
        ("database", {"url": ""}),
        ("logging", {"level": "LOUD"}),
    ])
    def test_invalid_values(self, tmp_path, section, values):
        with pytest.raises(ValueError):
            get_active_config(_write(tmp_path, {section: values}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError):
            merge_settings({"costing": {}}, {"costing": ["x"]})

    def test_logging_level_names(self):
        config = parse_config({"database": {"url": "sqlite://"}, "logging": {"level": "debug"}})
        assert logging.getLevelName(config.logging.level.upper()) == logging.DEBUG


class TestChecksum:

    def test_key_order_irrelevant(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_to_dict_round_trip(self):
        config = get_active_config()
        assert compute_checksum(config.to_dict()) == config.checksum
