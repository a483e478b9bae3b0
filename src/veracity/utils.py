import contextlib
import fcntl
import os
import os.path
import re
import tempfile
import threading
import time

from veracity import FileLockedError
from veracity._output import output


@contextlib.contextmanager
def locked(filename, blocking=False):
    """Hold an exclusive lock on `filename` while the block runs.

    Non-blocking by default: a lock held elsewhere raises FileLockedError.

    """
    with open(filename, "a+") as lockfile:
        flags = fcntl.LOCK_EX
        if not blocking:
            flags |= fcntl.LOCK_NB
        try:
            fcntl.lockf(lockfile, flags)
        except (BlockingIOError, PermissionError):
            raise FileLockedError.from_context(filename)
        # the pid of the holder, for whoever finds the lock taken
        lockfile.seek(0)
        lockfile.truncate()
        print(os.getpid(), file=lockfile)
        lockfile.flush()
        try:
            yield
        finally:
            lockfile.seek(0)
            lockfile.truncate()


class ScopeLocks(object):
    """Mutual exclusion per (target, scope) pillar document.

    Lock files cover concurrent processes, the in-process lock table covers
    threads of the same process (fcntl locks are per process).

    """

    def __init__(self, lock_dir=None):
        if not lock_dir:
            lock_dir = os.path.join(tempfile.gettempdir(), "veracity-locks")
        self.lock_dir = lock_dir
        self._held = set()
        self._mutex = threading.Lock()

    def path(self, target, scope):
        name = re.sub(r"[^A-Za-z0-9_.-]", "_", f"{target}--{scope}")
        return os.path.join(self.lock_dir, name + ".lock")

    def is_held(self, target, scope):
        if (target, scope) in self._held:
            return True
        path = self.path(target, scope)
        if not os.path.exists(path):
            return False
        try:
            with locked(path):
                return False
        except FileLockedError:
            return True

    @contextlib.contextmanager
    def hold(self, target, scope):
        key = (target, scope)
        with self._mutex:
            if key in self._held:
                raise FileLockedError.from_context(self.path(target, scope))
            self._held.add(key)
        try:
            os.makedirs(self.lock_dir, exist_ok=True)
            with locked(self.path(target, scope)):
                yield
        finally:
            with self._mutex:
                self._held.discard(key)


class Timer(object):
    """Collect named durations of the phases of a run."""

    def __init__(self, note):
        self.note = note
        self.durations = {}
        self.started = time.monotonic()

    @contextlib.contextmanager
    def step(self, note):
        started = time.monotonic()
        try:
            yield
        finally:
            self.durations[note] = time.monotonic() - started
            output.annotate(
                "{} {} took {:.2f}s".format(
                    self.note, note, self.durations[note]
                ),
                debug=True,
            )

    def elapsed(self):
        return time.monotonic() - self.started

    def humanize(self, *steps):
        parts = ["{:.2f}s".format(self.elapsed())]
        detail = [
            "{}={:.2f}s".format(step, self.durations[step])
            for step in steps
            if step in self.durations
        ]
        if detail:
            parts.append("({})".format(", ".join(detail)))
        return " ".join(parts)


def is_glob(target):
    return any(c in target for c in "*?[")


def short_hostname(name):
    return name.split(".")[0]
