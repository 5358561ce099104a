"""Tests for round config validation, engine settings and field normalization."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from jurymatch.config import EngineSettings, load_settings
from jurymatch.types import RoundConfig
from jurymatch.utils import json_list, json_parse, normalize_regions, normalize_stage, normalize_verticals


class TestRoundConfig:
    def test_defaults_are_valid(self):
        config = RoundConfig()
        assert config.weight_total == 100
        assert config.target_jurors_per_startup == 3

    def test_weights_must_sum_to_100(self):
        with pytest.raises(ValidationError, match=r"Weights must sum to 100 \(got 90\)"):
            RoundConfig(vertical_weight=30)

    def test_tolerance(self):
        RoundConfig(vertical_weight=40.005)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError):
            RoundConfig(vertical_weight=-10, stage_weight=70)

    def test_target_must_be_positive(self):
        with pytest.raises(ValidationError):
            RoundConfig(target_jurors_per_startup=0)


class TestEngineSettings:
    def test_blend_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            EngineSettings(ai_rule_weight=0.5, ai_model_weight=0.7)

    def test_max_positive_credit(self):
        assert EngineSettings(interest_bonus=2.0).max_positive_credit == 12.0

    def test_yaml_then_env(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("interest_bonus: 2.5\nai_batch_size: 8\n", encoding="utf-8")
        monkeypatch.setenv("JURYMATCH_AI_BATCH_SIZE", "3")
        settings = load_settings(path)
        assert settings.interest_bonus == 2.5
        assert settings.ai_batch_size == 3

    def test_settings_file_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("overflow_penalty: 9\n", encoding="utf-8")
        monkeypatch.setenv("JURYMATCH_SETTINGS_FILE", str(path))
        assert load_settings().overflow_penalty == 9.0

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_settings(tmp_path / "nope.yaml") == EngineSettings()


class TestNormalization:
    def test_aliases_map_to_canonical(self):
        assert normalize_regions(["EU", "usa", "Worldwide"]) == ["Europe", "North America", "Global"]
        assert normalize_stage("preseed") == "Pre-Seed"
        assert normalize_verticals(["Payments", "Banking", "AI"]) == ["Fintech", "AI/ML"]

    def test_unknown_values_kept_trimmed(self):
        assert normalize_verticals([" SpaceTech ", ""]) == ["SpaceTech"]


class TestJsonHelpers:
    def test_json_parse(self):
        assert json_parse('{"a": 1}') == {"a": 1}
        assert json_parse("broken") == {}
        assert json_parse(None, []) == []

    def test_json_list(self):
        assert json_list('["a", "", null, 3]') == ["a", "3"]
        assert json_list('{"a": 1}') == []
