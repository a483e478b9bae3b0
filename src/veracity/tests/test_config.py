import pytest

from veracity import ConfigurationError
from veracity.config import Config


@pytest.fixture
def cfg(tmp_path):
    path = tmp_path / "veracity.cfg"
    path.write_text(
        """\
[salt]
api_url = https://salt.example.com:8000
username = deployer
verify_ssl = no

[store]
recipients =
    age1abc,
    ssh-ed25519 AAAA

[deploy]
jobs = 4
deadline = 90.5
"""
    )
    return str(path)


def test_defaults_without_file():
    config = Config(environ={})
    assert config["salt"]["api_url"] == "http://localhost:8001"
    assert config["salt"].as_int("timeout") == 60
    assert config["salt"].as_bool("verify_ssl")
    assert config["pillar"]["root"] == "/srv/pillar/minions"
    assert config["deploy"].as_float("deadline") is None
    assert config["deploy"].as_float("timeout") is None


def test_file_values_override_defaults(cfg):
    config = Config(cfg, environ={})
    assert config["salt"]["api_url"] == "https://salt.example.com:8000"
    assert config["salt"]["username"] == "deployer"
    assert config["salt"]["eauth"] == "pam"
    assert not config["salt"].as_bool("verify_ssl")
    assert config["store"].as_list("recipients") == [
        "age1abc",
        "ssh-ed25519 AAAA",
    ]
    assert config["deploy"].as_int("jobs") == 4
    assert config["deploy"].as_float("deadline") == 90.5
    assert "salt" in config
    assert "gotify" not in config


def test_environment_overrides_file(cfg):
    config = Config(
        cfg,
        environ={
            "SALT_API_URL": "https://other:8000",
            "SALT_API_PASSWORD": "pw",
            "GOTIFY_APP_TOKEN": "tok",
        },
    )
    assert config["salt"]["api_url"] == "https://other:8000"
    assert config.salt_password() == "pw"
    assert config["gotify"]["token"] == "tok"


def test_missing_password_fails_fast():
    with pytest.raises(ConfigurationError) as e:
        Config(environ={}).salt_password()
    assert "SALT_API_PASSWORD" in str(e.value)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        Config(str(tmp_path / "nope.cfg"))


def test_unknown_section(tmp_path):
    path = tmp_path / "veracity.cfg"
    path.write_text("[vault]\nurl = x\n")
    with pytest.raises(ConfigurationError) as e:
        Config(str(path))
    assert e.value.section == "vault"


def test_bad_values(tmp_path):
    path = tmp_path / "veracity.cfg"
    path.write_text("[salt]\ntimeout = soon\nverify_ssl = maybe\n")
    config = Config(str(path), environ={})
    with pytest.raises(ConfigurationError):
        config["salt"].as_int("timeout")
    with pytest.raises(ConfigurationError):
        config["salt"].as_bool("verify_ssl")


def test_unknown_section_lookup():
    config = Config(environ={})
    with pytest.raises(KeyError):
        config["vault"]
    assert config.get("vault") is None


def test_discover(tmp_path, cfg, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert Config.discover().path == "veracity.cfg"
    assert Config.discover(cfg).path == cfg
    monkeypatch.chdir(tmp_path.parent)
    assert Config.discover().path is None
