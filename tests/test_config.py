"""
Tests for settings loading.
"""

import pytest
from pydantic import ValidationError

from harvest.config import MemcachedSettings, PostgresSettings, Settings, VarnishSettings


class TestPostgresSettings:
    def test_defaults(self):
        settings = PostgresSettings()
        assert settings.host == "localhost"
        assert settings.port == 5432
        assert settings.sslmode == "disable"
        assert settings.connect_timeout == 5
        assert settings.metric_key_prefix == "postgres"

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("HARVEST_POSTGRES_HOST", "db.internal")
        monkeypatch.setenv("HARVEST_POSTGRES_PORT", "6432")
        monkeypatch.setenv("HARVEST_POSTGRES_CONNECT_TIMEOUT", "2")

        settings = PostgresSettings()

        assert settings.host == "db.internal"
        assert settings.port == 6432
        assert settings.connect_timeout == 2

    def test_negative_timeout_rejected(self):
        with pytest.raises(ValidationError):
            PostgresSettings(connect_timeout=-1)

    def test_conninfo(self):
        conninfo = PostgresSettings(
            user="monitor", password="s3cret pass", database="app", connect_timeout=3
        ).conninfo()

        assert "user=monitor" in conninfo
        assert "password='s3cret pass'" in conninfo
        assert "dbname=app" in conninfo
        assert "connect_timeout=3" in conninfo
        assert "sslmode=disable" in conninfo

    def test_conninfo_options_override(self):
        conninfo = PostgresSettings(
            user="monitor", options="sslmode=require application_name=harvest"
        ).conninfo()

        assert "sslmode=require" in conninfo
        assert "sslmode=disable" not in conninfo
        assert "application_name=harvest" in conninfo


class TestOtherSettings:
    def test_memcached_defaults(self):
        settings = MemcachedSettings()
        assert (settings.host, settings.port, settings.socket) == ("localhost", 11211, None)

    def test_varnish_environment(self, monkeypatch):
        monkeypatch.setenv("HARVEST_VARNISH_VARNISHSTAT_PATH", "/usr/local/bin/varnishstat")
        assert VarnishSettings().varnishstat_path == "/usr/local/bin/varnishstat"

    def test_log_level_is_upper_cased(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_enabled_plugins_from_environment(self, monkeypatch):
        monkeypatch.setenv("HARVEST_ENABLED_PLUGINS", '["postgres"]')
        assert Settings().enabled_plugins == ["postgres"]
