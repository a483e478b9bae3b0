from unittest import mock

import pytest

from veracity import CredentialDisabled, InvalidTransition
from veracity.config import Config
from veracity.deploy import Attempt, Deployment, State, deploy, from_config
from veracity.fixtures import SETUP_KEY, timeout_result
from veracity.purposes import NetbirdEnrollment, ProxmoxCommand
from veracity.result import ErrorKind


@pytest.fixture
def deployment(salt, memory_store, netbird_key, locks):
    return Deployment(
        salt, memory_store, netbird_key, NetbirdEnrollment(), locks=locks
    )


def test_successful_attempt_walks_all_states(salt, netbird_key):
    attempt = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1")
    result = attempt.run()
    assert result.success
    assert result.written
    assert result.output == "netbird applied"
    assert attempt.history == [
        State.START,
        State.WRITE_PILLAR,
        State.REFRESH_PILLAR,
        State.APPLY_STATE,
        State.CLEANUP,
        State.SUCCESS,
    ]
    assert salt.calls_for("web1") == ["write", "refresh", "apply", "delete"]
    assert salt.documents == {}


def test_injected_failures_are_returned_unchanged(salt):
    failure = timeout_result()
    for step in ["refresh", "apply", "run"]:
        salt.fail(step, "web1", failure)
    assert salt.refresh("web1") is failure
    assert salt.apply_routine("web1", "netbird") is failure
    assert salt.run_command("web1", "cmd.run") is failure
    assert salt.refresh("web2").success


@pytest.mark.parametrize("step", ["write", "refresh", "apply"])
def test_cleanup_runs_exactly_once_whatever_step_fails(
    salt, netbird_key, step
):
    salt.fail(step, "web1")
    result = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1").run()
    assert not result.success
    assert result.error == "{} failed".format(step)
    assert salt.calls_for("web1").count("delete") == 1
    assert salt.calls_for("web1")[-1] == "delete"


@pytest.mark.parametrize("step", ["write", "refresh", "apply"])
def test_cleanup_runs_exactly_once_when_a_step_raises(
    salt, netbird_key, step
):
    salt.fail(step, "web1", RuntimeError("connection reset"))
    result = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1").run()
    assert not result.success
    assert result.kind == ErrorKind.UNEXPECTED
    assert result.error == "RuntimeError: connection reset"
    assert salt.calls_for("web1").count("delete") == 1


def test_write_failure_stops_before_refresh(salt, netbird_key):
    salt.fail("write", "web1")
    attempt = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1")
    result = attempt.run()
    assert salt.calls_for("web1") == ["write", "delete"]
    assert result.kind == ErrorKind.WRITE
    assert not result.written
    assert attempt.history[-2:] == [State.CLEANUP, State.FAILED]


def test_refresh_failure_never_applies(salt, netbird_key):
    salt.fail("refresh", "web1")
    result = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1").run()
    assert salt.calls_for("web1") == ["write", "refresh", "delete"]
    assert result.kind == ErrorKind.REFRESH
    assert result.written


def test_apply_timeout_is_a_failed_result(salt, netbird_key):
    salt.fail("apply", "web1", timeout_result())
    result = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1").run()
    assert not result.success
    assert result.kind == ErrorKind.TIMEOUT
    assert "timeout" in result.error
    assert salt.calls_for("web1")[-1] == "delete"


def test_cleanup_failure_does_not_fail_the_target(salt, netbird_key, output):
    salt.fail("delete", "web1")
    result = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1").run()
    assert result.success
    assert result.cleanup_failed
    assert "may be left behind" in output.backend.output


def test_cleanup_exception_is_logged(salt, netbird_key, output):
    salt.fail("delete", "web1", OSError("disk gone"))
    result = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1").run()
    assert result.success
    assert result.cleanup.kind == ErrorKind.CLEANUP
    assert "OSError: disk gone" in output.backend.output


def test_illegal_transitions_are_refused(salt, netbird_key):
    attempt = Attempt(salt, NetbirdEnrollment(), netbird_key, "web1")
    with pytest.raises(InvalidTransition):
        attempt._advance(State.APPLY_STATE)
    attempt.run()
    with pytest.raises(InvalidTransition):
        attempt._advance(State.CLEANUP)


def test_attempt_uses_purpose_timeout_by_default(salt, proxmox_key):
    Attempt(salt, ProxmoxCommand(), proxmox_key, "pve1").run()
    assert ("apply", "pve1", "proxmox.command", 60) in salt.calls


def test_plaintext_secret_only_travels_in_the_document(
    deployment, salt, output
):
    deployment.run(["web1", "web2"])
    for call in salt.calls:
        if call[0] == "write":
            assert call[3]["setup_key"] == SETUP_KEY
        else:
            assert SETUP_KEY not in repr(call)
    assert SETUP_KEY not in output.backend.output
    assert "4F0F9A28...FC63" in output.backend.output


def test_partial_success_is_aggregated_per_target(
    deployment, salt, netbird_key
):
    salt.fail("refresh", "b")
    report = deployment.run(["a", "b", "c"])
    assert {t: r.success for t, r in report.results.items()} == {
        "a": True,
        "b": False,
        "c": True,
    }
    assert list(report.results) == ["a", "b", "c"]
    assert report.status == "partial"
    assert report.success
    assert report.errors == [{"target": "b", "error": "refresh failed"}]
    assert report.summary == "netbird deployed to 2 of 3 target(s)"
    assert netbird_key.usage_count == 1
    assert netbird_key.last_used_at is not None


def test_usage_is_not_marked_without_success(deployment, salt, netbird_key):
    salt.fail("apply", "a")
    report = deployment.run(["a"])
    assert report.status == "partial"
    assert netbird_key.usage_count == 0


def test_no_written_target_is_an_outright_failure(deployment, salt):
    salt.fail("write", "a")
    salt.fail("write", "b")
    report = deployment.run(["a", "b"])
    assert report.status == "failed"
    assert not report.success
    assert report.as_dict()["errors"] == [
        {"target": "a", "error": "write failed"},
        {"target": "b", "error": "write failed"},
    ]


def test_one_unwritten_target_fails_the_call_but_not_the_others(
    deployment, salt
):
    salt.fail("write", "b")
    report = deployment.run(["a", "b"])
    assert report.status == "partial"
    assert not report.success
    assert report.succeeded == ["a"]


def test_all_targets_succeed(deployment):
    report = deployment.run(["a", "b"])
    assert report.status == "success"
    assert report.as_dict()["message"] == (
        "netbird deployed to 2 of 2 target(s)"
    )


def test_targets_are_deduplicated(deployment, salt):
    report = deployment.run(["a", "a", "b"])
    assert len(report) == 2
    assert [c[1] for c in salt.calls if c[0] == "write"] == ["a", "b"]


def test_disabled_credential_is_refused(deployment, salt, netbird_key):
    netbird_key.set_enabled(False)
    with pytest.raises(CredentialDisabled):
        deployment.run(["a"])
    assert salt.calls == []


def test_purpose_must_accept_credential(salt, memory_store, proxmox_key):
    deployment = Deployment(
        salt, memory_store, proxmox_key, NetbirdEnrollment()
    )
    with pytest.raises(TypeError):
        deployment.run(["a"])


def test_held_scope_lock_skips_target(deployment, salt, locks):
    with locks.hold("a", "netbird"):
        report = deployment.run(["a", "b"])
    assert report["a"].kind == ErrorKind.LOCKED
    assert salt.calls_for("a") == []
    assert report["b"].success


def test_deadline_skips_unstarted_targets(deployment, salt):
    deployment.deadline = 5
    deployment.timer.elapsed = lambda: 10
    report = deployment.run(["a"])
    assert report["a"].kind == ErrorKind.SKIPPED
    assert salt.calls == []
    assert report.status == "failed"


def test_parallel_jobs_keep_per_target_order(
    salt, memory_store, netbird_key, locks
):
    deployment = Deployment(
        salt,
        memory_store,
        netbird_key,
        NetbirdEnrollment(),
        jobs=4,
        locks=locks,
    )
    salt.fail("apply", "t3")
    targets = ["t{}".format(i) for i in range(8)]
    report = deployment.run(targets)
    assert list(report.results) == targets
    assert report.failed == ["t3"]
    for target in targets:
        assert salt.calls_for(target)[-1] == "delete"
        assert salt.calls_for(target).index("write") < salt.calls_for(
            target
        ).index("refresh")
    assert netbird_key.usage_count == 1


def test_registration_and_notification_after_run(
    salt, memory_store, netbird_key, locks
):
    registrar = mock.Mock()
    notifier = mock.Mock()
    salt.fail("apply", "b")
    deployment = Deployment(
        salt,
        memory_store,
        netbird_key,
        NetbirdEnrollment(),
        locks=locks,
        registrar=registrar,
        notifier=notifier,
    )
    deployment.run(["a", "b"])
    registrar.register.assert_called_once_with(["a"])
    title, message = notifier.send.call_args[0]
    assert title == "Deployment partial: netbird"
    assert "b: apply failed" in message


def test_side_effect_failures_do_not_change_the_report(
    salt, memory_store, netbird_key, locks, output
):
    registrar = mock.Mock()
    registrar.register.side_effect = RuntimeError("inventory down")
    notifier = mock.Mock()
    notifier.send.side_effect = RuntimeError("gotify down")
    deployment = Deployment(
        salt,
        memory_store,
        netbird_key,
        NetbirdEnrollment(),
        locks=locks,
        registrar=registrar,
        notifier=notifier,
    )
    report = deployment.run(["a"])
    assert report.status == "success"
    assert "Inventory registration failed" in output.backend.output
    assert "Notification failed" in output.backend.output


def test_usage_marking_failure_is_logged(
    salt, memory_store, netbird_key, locks, output
):
    memory_store.mark_used = mock.Mock(side_effect=OSError("read-only"))
    deployment = Deployment(
        salt, memory_store, netbird_key, NetbirdEnrollment(), locks=locks
    )
    report = deployment.run(["a"])
    assert report.status == "success"
    assert "Could not record usage of `office`" in output.backend.output


def test_deploy_looks_up_the_credential(salt, memory_store, locks):
    report = deploy(
        salt, memory_store, "office", NetbirdEnrollment(), ["a"], locks=locks
    )
    assert report.success
    assert memory_store.get("office").usage_count == 1


def test_report_renders_per_target_lines(deployment, salt, output):
    salt.fail("apply", "b")
    deployment.run(["a", "b"]).report()
    assert "a: OK" in output.backend.output
    assert "b: FAILED (apply)" in output.backend.output
    assert " netbird deployed to 1 of 2 target(s) " in output.backend.output


@pytest.fixture
def from_files(salt, memory_store):
    with mock.patch(
        "veracity.deploy.SaltClient.from_config", return_value=salt
    ), mock.patch(
        "veracity.deploy.CredentialStore.from_config",
        return_value=memory_store,
    ):
        yield


def deploy_config(tmp_path, options=""):
    path = tmp_path / "veracity.cfg"
    path.write_text(
        "[deploy]\nlock_dir = {}\n{}".format(tmp_path / "locks", options)
    )
    return Config(str(path), environ={})


def test_timeout_defaults_to_the_purpose(tmp_path, from_files, salt):
    deployment = from_config(deploy_config(tmp_path), "cluster")
    assert deployment.timeout is None
    deployment.run(["pve1"])
    assert ("apply", "pve1", "proxmox.command", 60) in salt.calls


def test_timeout_from_deploy_section(tmp_path, from_files, salt):
    deployment = from_config(
        deploy_config(tmp_path, "timeout = 900\n"), "cluster"
    )
    assert deployment.timeout == 900
    deployment.run(["pve1"])
    assert ("apply", "pve1", "proxmox.command", 900) in salt.calls


def test_command_line_timeout_wins(tmp_path, from_files):
    deployment = from_config(
        deploy_config(tmp_path, "timeout = 900\n"), "cluster", timeout=30
    )
    assert deployment.timeout == 30
