"""Tests for on-disk credential storage and client configuration"""

import os
import stat
import time

import pytest

from rool_sync.auth import CredentialStore, FileAuthProvider, credentials_from_callback, endpoint_hash
from rool_sync.config import BASE_URL_ENV_VAR, DEFAULT_BASE_URL, RoolConfig
from rool_sync.errors import NotAuthenticated
from rool_sync.models import Credentials


class TestCredentialStore:
    """Test TOML credential files"""

    def test_save_and_load(self, tmp_path):
        store = CredentialStore(tmp_path, scope="abc")
        credentials = Credentials("access", "refresh", 1700000000.0)

        store.save(credentials)

        assert store.credentials_path == tmp_path / "credentials-abc.toml"
        assert store.exists()
        assert store.load() == credentials

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_file_is_private(self, tmp_path):
        store = CredentialStore(tmp_path)
        store.save(Credentials("access", None, 1.0))
        mode = stat.S_IMODE(store.credentials_path.stat().st_mode)
        assert mode == 0o600

    def test_missing_refresh_token_round_trips(self, tmp_path):
        store = CredentialStore(tmp_path)
        store.save(Credentials("access", None, 5.0))
        assert store.load().refresh_token is None

    def test_clear(self, tmp_path):
        store = CredentialStore(tmp_path)
        store.save(Credentials("access", "refresh", 1.0))
        store.clear()
        assert not store.exists()
        assert store.load() is None
        store.clear()

    def test_corrupted_file_loads_as_none(self, tmp_path):
        store = CredentialStore(tmp_path)
        store.credentials_path.write_text("not = [valid", encoding="utf-8")
        assert store.load() is None

    def test_storage_round_trip(self, tmp_path):
        store = CredentialStore(tmp_path)
        assert store.load_storage() is None
        store.save_storage({"theme": "dark", "recent": ["a", "b"]})
        assert store.load_storage() == {"theme": "dark", "recent": ["a", "b"]}


class TestScoping:
    """Test that each deployment gets its own files"""

    def test_endpoint_hash(self):
        assert endpoint_hash(None) == "default"
        assert len(endpoint_hash("https://a.test/auth")) == 8
        assert endpoint_hash("https://a.test/auth") != endpoint_hash("https://b.test/auth")

    def test_providers_for_different_deployments_do_not_share(self, tmp_path):
        first = FileAuthProvider(directory=tmp_path, auth_url="https://a.test/auth")
        second = FileAuthProvider(directory=tmp_path, auth_url="https://b.test/auth")

        first.write_credentials(Credentials("a-token", None, 1.0))

        assert first.read_credentials().access_token == "a-token"
        assert second.read_credentials() is None


class TestCallbackParsing:
    """Test credentials built from the login callback"""

    def test_valid_callback(self):
        credentials = credentials_from_callback(
            {"id_token": "tok", "refresh_token": "ref", "expires_in": "3600"}, now=1000.0
        )
        assert credentials == Credentials("tok", "ref", 4600.0)

    @pytest.mark.parametrize(
        "params",
        [
            {"refresh_token": "ref", "expires_in": "3600"},
            {"id_token": "tok"},
            {"id_token": "tok", "expires_in": "soon"},
        ],
    )
    def test_invalid_callback(self, params):
        with pytest.raises(NotAuthenticated):
            credentials_from_callback(params)

    def test_expiry_helpers(self):
        now = time.time()
        credentials = Credentials("tok", None, now + 200)
        assert credentials.expires_within(300, now=now)
        assert not credentials.is_expired(now=now)
        assert credentials.is_expired(now=now + 201)


class TestRoolConfig:
    """Test base URL resolution"""

    def test_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv(BASE_URL_ENV_VAR, raising=False)
        config = RoolConfig(config_dir=tmp_path)
        assert config.get_base_url() == DEFAULT_BASE_URL

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        config = RoolConfig(config_dir=tmp_path)
        config.set_base_url("https://file.test/")
        monkeypatch.setenv(BASE_URL_ENV_VAR, "https://env.test")
        assert config.get_base_url() == "https://env.test"

    def test_set_base_url_persists(self, tmp_path, monkeypatch):
        monkeypatch.delenv(BASE_URL_ENV_VAR, raising=False)
        RoolConfig(config_dir=tmp_path).set_base_url("https://file.test/")
        assert RoolConfig(config_dir=tmp_path).get_base_url() == "https://file.test"

    def test_derived_endpoints(self, config):
        assert config.graphql_url == "https://rool.test/graphql"
        assert config.auth_url == "https://rool.test/auth"
        assert config.stream_url == "wss://rool.test/events"

    def test_plain_http_maps_to_ws(self, tmp_path):
        config = RoolConfig(config_dir=tmp_path, base_url="http://localhost:8080")
        assert config.stream_url == "ws://localhost:8080/events"
