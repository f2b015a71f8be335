"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from athlete_sync.wearables.config_loader import (
    ConfigValidationError,
    SyncConfig,
    _validate_and_build,
    load_sync_config,
    reload_sync_config,
)

_MINIMAL = {
    "providers": {"bluetooth": {"display_name": "BT"}},
}


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self, sync_config: SyncConfig) -> None:
        assert sync_config.version == "1.0"
        assert sync_config.history_capacity == 30
        assert sync_config.bucket_millis == 300_000
        assert sync_config.window_hours == 24

    def test_all_providers_configured(self, sync_config: SyncConfig) -> None:
        assert set(sync_config.providers) == {"cloud_fitness", "bluetooth", "activity_service"}

    def test_cloud_fitness_oauth_parameters(self, sync_config: SyncConfig) -> None:
        cfg = sync_config.provider("cloud_fitness")
        assert cfg.token_url == "https://oauth2.googleapis.com/token"
        assert cfg.extra_auth_params == {"access_type": "offline", "prompt": "consent"}
        assert "fitness.heart_rate.read" in cfg.scope

    def test_activity_service_scopes_comma_separated(self, sync_config: SyncConfig) -> None:
        assert sync_config.provider("activity_service").scope == "read,activity:read"

    def test_cloud_fitness_gauge_and_counter_reducers(self, sync_config: SyncConfig) -> None:
        table = sync_config.normalization_for("cloud_fitness")
        assert table["com.google.heart_rate.bpm"].reduce == "last"
        assert table["com.google.step_count.delta"].reduce == "sum"
        assert table["com.google.calories.expended"].reduce == "sum"

    def test_unknown_provider_has_empty_table(self, sync_config: SyncConfig) -> None:
        assert sync_config.normalization_for("nope") == {}

    def test_synthetic_bounds(self, sync_config: SyncConfig) -> None:
        assert sync_config.synthetic.fields["heartRate"] == (60, 100)
        assert sync_config.synthetic.activities == ["Running", "Walking", "Cycling"]

    def test_poll_interval_default(self, sync_config: SyncConfig) -> None:
        assert sync_config.poll_interval("cloud_fitness") == 5.0


class TestConfigValidation:
    def test_minimal_config_builds(self) -> None:
        config = _validate_and_build(dict(_MINIMAL))
        assert config.history_capacity == 30
        assert config.normalization == {}

    def test_missing_providers_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="providers"):
            _validate_and_build({})

    def test_unknown_canonical_field_rejected(self) -> None:
        raw = {
            **_MINIMAL,
            "normalization": {"bluetooth": {"hr": {"field": "pulse"}}},
        }
        with pytest.raises(ConfigValidationError, match="not a canonical field"):
            _validate_and_build(raw)

    def test_unknown_conversion_rejected(self) -> None:
        raw = {
            **_MINIMAL,
            "normalization": {"bluetooth": {"hr": {"field": "heart_rate", "convert": "furlongs"}}},
        }
        with pytest.raises(ConfigValidationError, match="not a known conversion"):
            _validate_and_build(raw)

    def test_bad_reducer_rejected(self) -> None:
        raw = {
            **_MINIMAL,
            "normalization": {"bluetooth": {"hr": {"field": "heart_rate", "reduce": "max"}}},
        }
        with pytest.raises(ConfigValidationError, match="'last' or 'sum'"):
            _validate_and_build(raw)

    def test_all_errors_reported_together(self) -> None:
        raw = {
            "history_capacity": 0,
            "providers": {"x": {"auth_url": "https://a"}},
            "synthetic": {"fields": {"steps": [10, 5]}},
        }
        with pytest.raises(ConfigValidationError) as exc_info:
            _validate_and_build(raw)
        message = str(exc_info.value)
        assert "3 validation error(s)" in message
        assert "history_capacity" in message
        assert "auth_url and token_url" in message
        assert "synthetic.fields.steps" in message


class TestConfigReload:
    def test_reload_from_custom_path(self, tmp_path: Path) -> None:
        path = tmp_path / "sync_config.yaml"
        path.write_text(
            textwrap.dedent(
                """
                version: "2.0"
                history_capacity: 10
                providers:
                  bluetooth:
                    display_name: "BT"
                """
            )
        )
        try:
            config = reload_sync_config(path)
            assert config.version == "2.0"
            assert config.history_capacity == 10
        finally:
            reload_sync_config()

    def test_invalid_reload_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("providers: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            load_sync_config(path)

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(tmp_path / "missing.yaml")
