"""
Configuration loading tests.
"""
import os

import pytest

from pipeinfra import config
from pipeinfra.config import DEFAULT_SECRETS, ProvisionConfig
from pipeinfra.errors import ValidationFailed

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


class TestLoad:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = config.load()
        assert cfg == ProvisionConfig()
        assert cfg.resource_group == "my-react-app-rg"
        assert cfg.secrets == DEFAULT_SECRETS

    def test_picks_up_working_directory_file(self, tmp_path, monkeypatch):
        (tmp_path / "pipeinfra.yaml").write_text("resource_group: cwd-rg\n")
        monkeypatch.chdir(tmp_path)
        assert config.load().resource_group == "cwd-rg"

    def test_fixture_file(self):
        cfg = config.load(os.path.join(FIXTURES, "config.yaml"))
        assert cfg.resource_group == "fixture-rg"
        assert cfg.location == "westus2"
        # dashed keys are accepted
        assert cfg.registry_name == "fixtureacr01"
        assert cfg.purge_registry_children is False

    def test_secrets_merge_with_defaults(self):
        cfg = config.load(os.path.join(FIXTURES, "config.yaml"))
        assert cfg.secrets["JWT-SECRET"] == "fixture-jwt"
        assert cfg.secrets["API-URL"] == DEFAULT_SECRETS["API-URL"]

    def test_unknown_keys_rejected(self, tmp_path):
        f = tmp_path / "bad.yaml"
        f.write_text("resource_group: x\nregion: westus\n")
        with pytest.raises(ValidationFailed) as exc_info:
            config.load(str(f))
        assert "'region'" in str(exc_info.value)

    def test_non_mapping_rejected(self, tmp_path):
        f = tmp_path / "bad.yaml"
        f.write_text("- just\n- a list\n")
        with pytest.raises(ValidationFailed):
            config.load(str(f))

    def test_empty_file_is_defaults(self, tmp_path):
        f = tmp_path / "empty.yaml"
        f.write_text("")
        assert config.load(str(f)) == ProvisionConfig()


class TestProvisionConfig:
    def test_overrides_ignore_none(self):
        cfg = ProvisionConfig(resource_group="a", location="westus")
        updated = cfg.with_overrides(resource_group="b", location=None)
        assert updated.resource_group == "b"
        assert updated.location == "westus"
        assert cfg.resource_group == "a"

    def test_scope(self):
        scope = ProvisionConfig(resource_group="rg1", location="uksouth", subscription="sub").scope
        assert (scope.name, scope.location, scope.subscription) == ("rg1", "uksouth", "sub")

    def test_as_parameters(self):
        params = ProvisionConfig(registry_name="acr123").as_parameters()
        assert params == {"acrName": "acr123"}

    def test_untouched_defaults_contribute_nothing(self):
        assert ProvisionConfig().as_parameters() == {}

    def test_override_to_default_value_is_contributed(self):
        cfg = ProvisionConfig().with_overrides(location="eastus", resource_group=None)
        assert cfg.as_parameters() == {"location": "eastus"}

    def test_changed_secret_is_contributed(self):
        cfg = ProvisionConfig()
        cfg.secrets["JWT-SECRET"] = "rotated"
        assert cfg.as_parameters() == {"jwtSecret": "rotated"}

    def test_file_values_are_contributed(self, tmp_path):
        f = tmp_path / "pipeinfra.yaml"
        f.write_text("location: eastus\nsecrets:\n  API-URL: https://api.example.com\n")
        params = config.load(str(f)).as_parameters()
        assert params["location"] == "eastus"
        assert params["apiUrl"] == "https://api.example.com"
        assert params["jwtSecret"] == DEFAULT_SECRETS["JWT-SECRET"]
        assert "acrName" not in params
