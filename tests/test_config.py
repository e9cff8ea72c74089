import pytest
from pydantic import ValidationError

from discovery.core.config import BlendOptions, ScoreOptions, Settings


class TestSettings:
    """Tests for environment loading and option validation"""

    def test_defaults(self, settings):
        assert settings.cache.auth_time_window_ms == 180_000
        assert settings.cache.anon_time_window_ms == 900_000
        assert settings.request.retry_after_s == 30
        assert "standard" in settings.blend.profiles

    def test_nested_override_from_env(self, monkeypatch):
        monkeypatch.setenv("CACHE__DEFAULT_TTL_SECONDS", "600")
        monkeypatch.setenv("MONGO_DB", "discovery_test")
        s = Settings(_env_file=None)
        assert s.cache.default_ttl_seconds == 600
        assert s.cache.max_key_len == 250
        assert s.MONGO_DB == "discovery_test"

    def test_settings_are_frozen(self, settings):
        with pytest.raises(ValidationError):
            settings.DEBUG = True

    def test_unknown_blend_lane(self):
        with pytest.raises(ValidationError):
            BlendOptions(profiles={"standard": {"viral": 1.0}})

    def test_negative_blend_weight(self):
        with pytest.raises(ValidationError):
            BlendOptions(profiles={"standard": {"trending": -0.1}})

    def test_unknown_tie_break(self):
        with pytest.raises(ValidationError):
            ScoreOptions(tie_breaks=["random"])

    def test_standard_profile_is_required(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, blend=BlendOptions(profiles={"discovery": {"trending": 1.0}}))
