"""Tests for environment-based settings."""

from chapter2audio.config import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.engine == "edge"
        assert settings.max_chunk_chars == 4000
        assert settings.max_fragment_bytes == 800
        assert settings.storage_bucket == "audio-files"
        assert not settings.uses_supabase

    def test_reads_environment(self):
        settings = Settings.from_env({
            "C2A_ENGINE": "google",
            "C2A_MAX_WORKERS": "4",
            "C2A_SYNTHESIS_TIMEOUT": "12.5",
            "SUPABASE_URL": "https://x.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "secret",
        })
        assert settings.engine == "google"
        assert settings.max_workers == 4
        assert settings.synthesis_timeout == 12.5
        assert settings.uses_supabase

    def test_blank_supabase_values_ignored(self):
        settings = Settings.from_env({"SUPABASE_URL": "", "SUPABASE_SERVICE_ROLE_KEY": "k"})
        assert settings.supabase_url is None
        assert not settings.uses_supabase
