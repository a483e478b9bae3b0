from unittest import mock

import pytest

from veracity.fixtures import API_TOKEN, SETUP_KEY, FakeSaltClient
from veracity.main import main
from veracity.result import Result


@pytest.fixture
def cfg(tmp_path, recipient):
    path = tmp_path / "veracity.cfg"
    path.write_text(
        """\
[store]
path = {tmp}/credentials.cfg
recipients = {recipient}

[deploy]
lock_dir = {tmp}/locks
""".format(
            tmp=tmp_path, recipient=recipient
        )
    )
    return str(path)


@pytest.fixture
def fake_salt(monkeypatch):
    salt = FakeSaltClient()
    monkeypatch.setenv("SALT_API_PASSWORD", "pw")
    with mock.patch(
        "veracity.salt.SaltClient.from_config", return_value=salt
    ):
        yield salt


def run(cfg, *args):
    main(["-c", cfg] + list(args))


def add_netbird(cfg):
    run(
        cfg,
        "credentials",
        "add-netbird",
        "office",
        "netbird.example.com",
        "--setup-key",
        SETUP_KEY,
    )


def test_usage_without_command(capsys):
    for args in [[], ["credentials"]]:
        with pytest.raises(SystemExit):
            main(args)
        std = capsys.readouterr()
        output = std.out if std.out else std.err
        assert output.startswith("usage:")


def test_credentials_lifecycle(cfg, capsys):
    add_netbird(cfg)
    run(cfg, "credentials", "list")
    out = capsys.readouterr().out
    assert "office" in out
    assert "enabled" in out
    assert SETUP_KEY not in out

    run(cfg, "credentials", "show", "office")
    out = capsys.readouterr().out
    assert "4F0F9A28...FC63" in out
    assert "https://netbird.example.com" in out
    assert SETUP_KEY not in out

    run(cfg, "credentials", "toggle", "office")
    assert "Credential disabled" in capsys.readouterr().out

    run(cfg, "credentials", "remove", "office")
    run(cfg, "credentials", "list")
    assert "No credentials." in capsys.readouterr().out


def test_add_proxmox(cfg, capsys):
    run(
        cfg,
        "credentials",
        "add-proxmox",
        "cluster",
        "https://pve1.example.com:8006",
        "automation!deploy",
        "--api-token",
        API_TOKEN,
    )
    run(cfg, "credentials", "show", "cluster")
    out = capsys.readouterr().out
    assert "https://pve1.example.com:8006" in out
    assert API_TOKEN not in out


def test_errors_are_reported(cfg, capsys):
    with pytest.raises(SystemExit) as e:
        run(cfg, "credentials", "show", "missing")
    assert e.value.code == 1
    out = capsys.readouterr().out
    assert "ERROR: Unknown credential" in out
    assert "missing" in out


def test_invalid_credential_is_reported(cfg, capsys):
    with pytest.raises(SystemExit):
        run(
            cfg,
            "credentials",
            "add-netbird",
            "office",
            "netbird.example.com",
            "--setup-key",
            "not-a-uuid",
        )
    assert "setup_key must be a valid UUID" in capsys.readouterr().out


def test_deploy(cfg, fake_salt, capsys):
    add_netbird(cfg)
    fake_salt.fail("refresh", "web2")
    run(cfg, "deploy", "office", "web1", "web2")
    out = capsys.readouterr().out
    assert "web1: OK" in out
    assert "web2: FAILED (refresh)" in out
    assert "netbird deployed to 1 of 2 target(s)" in out
    assert SETUP_KEY not in out
    assert fake_salt.documents == {}

    run(cfg, "credentials", "show", "office")
    assert "Used: 1" in capsys.readouterr().out


def test_deploy_total_failure_exits_1(cfg, fake_salt):
    add_netbird(cfg)
    fake_salt.fail("write", "web1")
    with pytest.raises(SystemExit) as e:
        run(cfg, "deploy", "office", "web1")
    assert e.value.code == 1


def test_deploy_disabled_credential(cfg, fake_salt, capsys):
    add_netbird(cfg)
    run(cfg, "credentials", "toggle", "office")
    with pytest.raises(SystemExit):
        run(cfg, "deploy", "office", "web1")
    assert "Credential is disabled" in capsys.readouterr().out
    assert fake_salt.calls == []


def test_proxmox_command(cfg, fake_salt, capsys):
    run(
        cfg,
        "credentials",
        "add-proxmox",
        "cluster",
        "https://pve1.example.com:8006",
        "automation!deploy",
        "--api-token",
        API_TOKEN,
    )
    fake_salt.respond(
        "apply",
        "pve1.example.com",
        Result.ok(
            "{}", stdout='{"success": true, "data": {"status": "running"}}'
        ),
    )
    run(cfg, "proxmox", "cluster", "vm_status", "--vmid", "101")
    out = capsys.readouterr().out
    assert '"status": "running"' in out
    document = [c for c in fake_salt.calls if c[0] == "write"][0][3]
    assert document["command"] == "vm_status"
    assert document["vmid"] == "101"
    assert document["node"] == "pve1"


def test_proxmox_command_failure(cfg, fake_salt):
    run(
        cfg,
        "credentials",
        "add-proxmox",
        "cluster",
        "https://pve1.example.com:8006",
        "automation!deploy",
        "--api-token",
        API_TOKEN,
    )
    fake_salt.respond(
        "apply",
        "pve1.example.com",
        Result.ok(
            "{}", stdout='{"success": false, "error": "VM 101 not found"}'
        ),
    )
    with pytest.raises(SystemExit) as e:
        run(cfg, "proxmox", "cluster", "vm_status", "--vmid", "101")
    assert e.value.code == 1


def test_sweep(cfg, fake_salt, capsys):
    fake_salt.documents = {("web1", "netbird"): {}, ("web1", "other"): {}}
    run(cfg, "sweep")
    assert "Removed 1 stale document(s)" in capsys.readouterr().out
    assert list(fake_salt.documents) == [("web1", "other")]


def test_status(cfg, fake_salt, capsys):
    fake_salt.respond("run", "web1", Result.ok("Management: Connected"))
    run(cfg, "status", "web1")
    assert "web1: connected" in capsys.readouterr().out

    fake_salt.respond("run", "web1", Result.ok("Management: Disconnected"))
    with pytest.raises(SystemExit):
        run(cfg, "status", "web1")
    assert "web1: not connected" in capsys.readouterr().out
