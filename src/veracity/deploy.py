import enum
import json
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List

from veracity import (
    CredentialDisabled,
    FileLockedError,
    InvalidTransition,
    prepare_error,
)
from veracity import purposes
from veracity._output import output
from veracity.inventory import InventoryRegistrar
from veracity.notify import GotifyNotifier
from veracity.result import ErrorKind, Result
from veracity.salt import SaltClient
from veracity.store import CredentialStore
from veracity.utils import ScopeLocks, Timer


class State(enum.Enum):
    START = "start"
    WRITE_PILLAR = "write-pillar"
    REFRESH_PILLAR = "refresh-pillar"
    APPLY_STATE = "apply-state"
    CLEANUP = "cleanup"
    SUCCESS = "success"
    FAILED = "failed"


TRANSITIONS = {
    State.START: {State.WRITE_PILLAR},
    State.WRITE_PILLAR: {State.REFRESH_PILLAR, State.CLEANUP},
    State.REFRESH_PILLAR: {State.APPLY_STATE, State.CLEANUP},
    State.APPLY_STATE: {State.CLEANUP},
    State.CLEANUP: {State.SUCCESS, State.FAILED},
    State.SUCCESS: set(),
    State.FAILED: set(),
}


class DeploymentResult(object):
    """Outcome of delivering a credential to one target."""

    def __init__(
        self,
        target,
        success,
        output=None,
        error=None,
        kind=None,
        cleanup=None,
        duration=0.0,
        written=False,
    ):
        self.target = target
        self.success = success
        self.written = written
        self.output = output
        self.error = error
        self.kind = kind
        # Cleanup problems are reported here, they never fail a target.
        self.cleanup = cleanup
        self.duration = duration

    def __repr__(self):
        if self.success:
            return "<DeploymentResult {} ok>".format(self.target)
        return "<DeploymentResult {} failed: {}>".format(
            self.target, self.error
        )

    @property
    def cleanup_failed(self):
        return self.cleanup is not None and not self.cleanup.success

    def as_dict(self):
        return {
            "target": self.target,
            "success": self.success,
            "written": self.written,
            "output": self.output,
            "error": self.error,
            "kind": self.kind.value if self.kind else None,
            "cleanup": self.cleanup.as_dict() if self.cleanup else None,
        }


class Attempt(object):
    """One pass of write, refresh, apply and cleanup for a single target.

    The pillar document is deleted exactly once per attempt, whatever step
    fails or raises.

    """

    def __init__(self, client, purpose, credential, target, timeout=None):
        self.client = client
        self.purpose = purpose
        self.credential = credential
        self.target = target
        self.timeout = timeout or purpose.timeout
        self.state = State.START
        self.history = [State.START]
        self.written = False

    def _advance(self, state):
        if state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                "{}: cannot go from {} to {}".format(
                    self.target, self.state.value, state.value
                )
            )
        self.state = state
        self.history.append(state)

    def run(self) -> DeploymentResult:
        started = time.monotonic()
        outcome = None
        try:
            outcome = self._steps()
        except Exception as e:
            output.error(
                "{}: deployment error".format(self.target),
                exc_info=sys.exc_info(),
            )
            outcome = Result.fail(prepare_error(e), ErrorKind.UNEXPECTED)

        cleanup = self._cleanup()
        self._advance(State.SUCCESS if outcome.success else State.FAILED)
        return DeploymentResult(
            self.target,
            outcome.success,
            output=outcome.output,
            error=outcome.error,
            kind=outcome.kind,
            cleanup=cleanup,
            duration=time.monotonic() - started,
            written=self.written,
        )

    def _steps(self) -> Result:
        self._advance(State.WRITE_PILLAR)
        document = self.purpose.document(self.credential, self.target)
        written = self.client.write_scoped_document(
            self.target, self.purpose.scope, document
        )
        if not written.success:
            return Result.fail(written.error, written.kind or ErrorKind.WRITE)
        self.written = True

        self._advance(State.REFRESH_PILLAR)
        refreshed = self.client.refresh(self.target)
        if not refreshed.success:
            return Result.fail(
                refreshed.error, refreshed.kind or ErrorKind.REFRESH
            )

        self._advance(State.APPLY_STATE)
        applied = self.client.apply_routine(
            self.target, self.purpose.routine, timeout=self.timeout
        )
        if not applied.success:
            return Result.fail(
                applied.error or "State apply failed",
                applied.kind or ErrorKind.APPLY,
                output=applied.output,
            )
        return Result.ok(self.purpose.parse_output(applied))

    def _cleanup(self) -> Result:
        self._advance(State.CLEANUP)
        try:
            result = self.client.delete_scoped_document(
                self.target, self.purpose.scope
            )
        except Exception as e:
            result = Result.fail(prepare_error(e), ErrorKind.CLEANUP)
        if not result.success:
            output.step(
                self.target,
                "Pillar `{}` may be left behind: {}".format(
                    self.purpose.scope, result.error
                ),
                red=True,
            )
        return result


class DeploymentReport(object):
    """Per-target results of one orchestration run, in target order."""

    def __init__(self, credential, purpose, results: Dict[str, DeploymentResult]):
        self.credential = credential
        self.purpose = purpose
        self.results = results
        self.duration = None

    def __getitem__(self, target):
        return self.results[target]

    def __iter__(self):
        return iter(self.results.values())

    def __len__(self):
        return len(self.results)

    @property
    def succeeded(self) -> List[str]:
        return [t for t, r in self.results.items() if r.success]

    @property
    def failed(self) -> List[str]:
        return [t for t, r in self.results.items() if not r.success]

    @property
    def cleanup_failures(self) -> List[str]:
        return [t for t, r in self.results.items() if r.cleanup_failed]

    @property
    def all_written(self):
        return bool(self.results) and all(
            r.written for r in self.results.values()
        )

    @property
    def status(self):
        """`success` when every target succeeded, `failed` when no target
        got past writing its pillar, `partial` otherwise.
        """
        if not any(r.written for r in self.results.values()):
            return "failed"
        if self.failed:
            return "partial"
        return "success"

    @property
    def success(self):
        """The pillar was written on every target.

        Later failures are per target; check `status` and `failed`.

        """
        return self.all_written

    @property
    def errors(self):
        return [
            {"target": r.target, "error": r.error or "Unknown error"}
            for r in self.results.values()
            if not r.success
        ]

    @property
    def summary(self):
        return "{} deployed to {} of {} target(s)".format(
            self.purpose.name, len(self.succeeded), len(self.results)
        )

    def as_dict(self):
        return {
            "success": self.success,
            "status": self.status,
            "message": self.summary,
            "results": {t: r.as_dict() for t, r in self.results.items()},
            "errors": self.errors,
        }

    def report(self):
        for result in self.results.values():
            if result.success:
                output.step(result.target, "OK", green=True)
            else:
                kind = result.kind.value if result.kind else "error"
                output.step(
                    result.target, "FAILED ({})".format(kind), red=True
                )
                output.annotate(result.error or "Unknown error", red=True)
            if result.cleanup_failed:
                output.tabular(
                    "Cleanup", result.cleanup.error, red=True
                )
        color = {"success": "green", "partial": "yellow", "failed": "red"}
        output.section(self.summary, **{color[self.status]: True})


class Deployment(object):
    """Deliver one credential to a set of targets.

    Each target runs its own `Attempt`; a failing target never stops the
    others. With `jobs > 1` distinct targets are processed in parallel.

    """

    def __init__(
        self,
        client,
        store,
        credential,
        purpose,
        jobs=1,
        timeout=None,
        deadline=None,
        locks=None,
        registrar=None,
        notifier=None,
    ):
        self.client = client
        self.store = store
        self.credential = credential
        self.purpose = purpose
        self.jobs = max(1, int(jobs or 1))
        self.timeout = timeout
        self.deadline = deadline
        self.locks = locks or ScopeLocks()
        self.registrar = registrar
        self.notifier = notifier
        self.timer = Timer("deployment")

    def _check(self):
        if not self.credential.enabled:
            raise CredentialDisabled.from_context(self.credential.name)
        if not self.purpose.accepts(self.credential):
            raise TypeError(
                "{} cannot deliver a {} credential".format(
                    self.purpose.name, self.credential.kind
                )
            )

    def deploy_target(self, target) -> DeploymentResult:
        if self.deadline is not None and self.timer.elapsed() > self.deadline:
            output.step(target, "Skipped (deadline exceeded)", red=True)
            return DeploymentResult(
                target,
                False,
                error="Deadline of {}s exceeded before start".format(
                    self.deadline
                ),
                kind=ErrorKind.SKIPPED,
            )
        output.step(
            target,
            "Deploying {} with `{}` ({})".format(
                self.purpose.name,
                self.credential.name,
                self.credential.masked_secret,
            ),
        )
        try:
            with self.locks.hold(target, self.purpose.scope):
                return Attempt(
                    self.client,
                    self.purpose,
                    self.credential,
                    target,
                    timeout=self.timeout,
                ).run()
        except FileLockedError as e:
            return DeploymentResult(
                target,
                False,
                error="Another deployment is in progress ({})".format(e),
                kind=ErrorKind.LOCKED,
            )

    def run(self, targets) -> DeploymentReport:
        self._check()
        targets = list(dict.fromkeys(targets))
        output.section(
            "Deploying {} to {} target(s)".format(
                self.purpose.name, len(targets)
            )
        )

        with self.timer.step("deploy"):
            if self.jobs == 1 or len(targets) < 2:
                results = [self.deploy_target(t) for t in targets]
            else:
                with ThreadPoolExecutor(self.jobs) as pool:
                    results = list(pool.map(self.deploy_target, targets))

        report = DeploymentReport(
            self.credential,
            self.purpose,
            {r.target: r for r in results},
        )

        if report.succeeded:
            self.mark_used()
        with self.timer.step("register"):
            self.register(report.succeeded)
        self.notify(report)

        report.duration = self.timer.elapsed()
        output.annotate(
            "Deployment took {}".format(
                self.timer.humanize("deploy", "register")
            ),
            debug=True,
        )
        return report

    def mark_used(self):
        try:
            updated = self.store.mark_used(self.credential.name)
        except Exception:
            output.error(
                "Could not record usage of `{}`".format(self.credential.name),
                exc_info=sys.exc_info(),
            )
            return
        self.credential.usage_count = updated.usage_count
        self.credential.last_used_at = updated.last_used_at

    def register(self, targets):
        if not self.registrar or not targets:
            return
        try:
            self.registrar.register(targets)
        except Exception:
            output.error(
                "Inventory registration failed", exc_info=sys.exc_info()
            )

    def notify(self, report):
        if not self.notifier:
            return
        try:
            self.notifier.send(
                "Deployment {}: {}".format(
                    report.status, report.purpose.name
                ),
                report.summary
                + "".join(
                    "\n{}: {}".format(e["target"], e["error"])
                    for e in report.errors
                ),
            )
        except Exception:
            output.error("Notification failed", exc_info=sys.exc_info())


def deploy(
    client,
    store,
    credential_name,
    purpose,
    targets,
    **kw,
) -> DeploymentReport:
    credential = store.get(credential_name)
    return Deployment(client, store, credential, purpose, **kw).run(targets)


def from_config(
    config,
    credential,
    jobs=None,
    timeout=None,
    deadline=None,
    purpose=None,
    **options,
) -> Deployment:
    settings = config["deploy"]
    client = SaltClient.from_config(config)
    store = CredentialStore.from_config(config)
    credential = store.get(credential)
    if purpose:
        purpose = purposes.get(purpose, **options)
    else:
        purpose = purposes.for_credential(credential, **options)
    if timeout is None:
        timeout = settings.as_float("timeout")
    if deadline is None:
        deadline = settings.as_float("deadline")
    return Deployment(
        client,
        store,
        credential,
        purpose,
        jobs=jobs or settings.as_int("jobs"),
        timeout=timeout,
        deadline=deadline,
        locks=ScopeLocks(settings.get("lock_dir")),
        registrar=InventoryRegistrar.from_config(client, config),
        notifier=GotifyNotifier.from_config(config),
    )


def main(config, credential, targets, jobs, timeout, deadline):
    deployment = from_config(
        config, credential, jobs=jobs, timeout=timeout, deadline=deadline
    )
    report = deployment.run(targets)
    report.report()
    return 1 if report.status == "failed" else 0


def proxmox(
    config, credential, command, vmid, vm_type, node, snap_name, description
):
    """Run a Proxmox API command on the minion of the credential's host."""
    deployment = from_config(
        config,
        credential,
        purpose="proxmox",
        command=command,
        vmid=vmid,
        vm_type=vm_type,
        node=node,
        snap_name=snap_name,
        snap_description=description,
    )
    target = deployment.credential.minion_id
    report = deployment.run([target])
    report.report()
    result = report[target]
    if result.success:
        output.line(json.dumps(result.output, indent=2, sort_keys=True))
        if isinstance(result.output, dict) and not result.output.get(
            "success", True
        ):
            return 1
    return 0 if result.success else 1
