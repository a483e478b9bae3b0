import json
import threading
import time

import requests

from veracity import (
    AuthenticationError,
    InvalidScope,
    SaltAPIError,
    SaltConnectionError,
    SaltTimeout,
)
from veracity._output import output
from veracity.pillar import DOCUMENT_MODE, PillarLayout, render
from veracity.result import ErrorKind, Result
from veracity.utils import is_glob

# Seconds a token is trusted; the master hands out 12 hour tokens.
TOKEN_EXPIRY = 11 * 60 * 60

# Extra HTTP time on top of the Salt level timeout of a call.
HTTP_TIMEOUT_BUFFER = 30

# Long enough for package download, install and connect on the minion.
DEFAULT_APPLY_TIMEOUT = 300


def format_output(data):
    if isinstance(data, str):
        return data
    return json.dumps(data, indent=2, sort_keys=True)


def runner_failed(value):
    """Whether a `salt.cmd` runner return value signals an error."""
    if value is False:
        return True
    if isinstance(value, str):
        lowered = value.lower()
        return lowered.startswith("error") or lowered.startswith(
            "exception occurred"
        )
    return False


def state_outcome(data):
    """Evaluate the return value of `state.apply` for one minion.

    Returns `(success, error)`.

    """
    if data is None:
        return False, "No response from minion"
    if data is False:
        return False, "Command returned false"
    if isinstance(data, list):
        return False, "\n".join(str(x) for x in data) or "State apply failed"
    if isinstance(data, str):
        return False, data
    if isinstance(data, dict):
        failed = []
        for state_id, state in sorted(data.items()):
            if not isinstance(state, dict):
                continue
            if state.get("result") is False:
                failed.append(
                    "{}: {}".format(
                        state.get("__id__", state_id),
                        state.get("comment", "failed"),
                    )
                )
        if failed:
            return False, "\n".join(failed)
        return True, None
    return True, None


def state_stdout(data):
    """Standard output of the commands run by a state, in run order."""
    if not isinstance(data, dict):
        return None
    states = sorted(
        (s for s in data.values() if isinstance(s, dict)),
        key=lambda s: s.get("__run_num__", 0),
    )
    chunks = []
    for state in states:
        changes = state.get("changes")
        if isinstance(changes, dict) and changes.get("stdout"):
            chunks.append(changes["stdout"])
    if not chunks:
        return None
    return "\n".join(chunks)


class SaltClient(object):
    """Client for the salt-api REST interface (rest_cherrypy).

    Low level calls raise `SaltAPIError`; the workflow operations
    (`write_scoped_document`, `refresh`, `apply_routine`,
    `delete_scoped_document`) report failures as `Result` values instead.

    """

    def __init__(
        self,
        api_url,
        username,
        password,
        eauth="pam",
        timeout=60,
        verify_ssl=True,
        layout=None,
        session=None,
        clock=time.time,
    ):
        self.api_url = api_url.rstrip("/")
        self.username = username
        self.password = password
        self.eauth = eauth
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.layout = layout or PillarLayout()
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.clock = clock

        self._token = None
        self._expires_at = None
        self._token_lock = threading.Lock()

    @classmethod
    def from_config(cls, config):
        salt = config["salt"]
        return cls(
            salt["api_url"],
            salt["username"],
            config.salt_password(),
            eauth=salt["eauth"],
            timeout=salt.as_int("timeout"),
            verify_ssl=salt.as_bool("verify_ssl"),
            layout=PillarLayout(config["pillar"]["root"]),
        )

    # Authentication

    def token_expired(self):
        return (
            self._token is None
            or self._expires_at is None
            or self._expires_at < self.clock()
        )

    def auth_token(self):
        if self.token_expired():
            with self._token_lock:
                # Another thread may have logged in while we waited.
                if self.token_expired():
                    self.authenticate()
        return self._token

    def authenticate(self):
        output.annotate(
            "Authenticating with Salt API at {}".format(self.api_url),
            debug=True,
        )
        url = self.api_url + "/login"
        try:
            response = self.session.post(
                url,
                json={
                    "username": self.username,
                    "password": self.password,
                    "eauth": self.eauth,
                },
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.Timeout as e:
            raise SaltTimeout.from_context(
                "Cannot connect to Salt API: {}".format(e), url
            )
        except requests.RequestException as e:
            raise SaltConnectionError.from_context(
                "Cannot connect to Salt API: {}".format(e), url
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        returned = data.get("return") if isinstance(data, dict) else None
        if not response.ok or not returned or "token" not in returned[0]:
            message = (
                data.get("error") if isinstance(data, dict) else None
            ) or "Authentication failed (HTTP {})".format(
                response.status_code
            )
            raise AuthenticationError.from_context(
                message, url, response.status_code
            )
        self._token = returned[0]["token"]
        self._expires_at = self.clock() + TOKEN_EXPIRY
        output.annotate("Authenticated with Salt API", debug=True)
        return self._token

    def clear_token(self):
        self._token = None
        self._expires_at = None

    # Transport

    def api_call(self, method, endpoint="/", body=None, timeout=None):
        url = self.api_url + endpoint
        timeout = timeout or self.timeout
        output.annotate(
            "Salt API {} {}".format(method.upper(), url), debug=True
        )

        def send():
            return self.session.request(
                method,
                url,
                json=body,
                headers={"X-Auth-Token": self.auth_token()},
                timeout=timeout,
                verify=self.verify_ssl,
            )

        try:
            response = send()
            if response.status_code == 401:
                output.annotate(
                    "Salt API token expired, re-authenticating", debug=True
                )
                self.clear_token()
                response = send()
        except requests.Timeout as e:
            raise SaltTimeout.from_context(
                "Request timeout: {}".format(e), url
            )
        except requests.RequestException as e:
            raise SaltConnectionError.from_context(
                "API request failed: {}".format(e), url
            )

        if not response.ok:
            self._handle_error(response, url)
        try:
            return response.json()
        except ValueError:
            raise SaltAPIError.from_context(
                "Invalid JSON in Salt API response", url, response.status_code
            )

    def _handle_error(self, response, url):
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            message = data["error"]
        else:
            message = "HTTP {}: {}".format(
                response.status_code, response.reason
            )
        raise SaltAPIError.from_context(message, url, response.status_code)

    # Generic calls

    def run_command(
        self, target, fun, args=None, kwargs=None, timeout=None
    ) -> Result:
        body = {"client": "local", "tgt": target, "fun": fun}
        if args:
            body["arg"] = list(args)
        if kwargs:
            body["kwarg"] = dict(kwargs)
        http_timeout = None
        if timeout:
            body["timeout"] = timeout
            http_timeout = timeout + HTTP_TIMEOUT_BUFFER

        try:
            result = self.api_call("post", "/", body, timeout=http_timeout)
        except SaltTimeout as e:
            return Result.fail(str(e), ErrorKind.TIMEOUT)
        except SaltAPIError as e:
            return Result.fail("Error: {}".format(e))

        returned = result.get("return") if isinstance(result, dict) else None
        if not returned:
            return Result.fail("No response from Salt API")
        data = returned[0]

        if is_glob(target):
            if isinstance(data, dict) and data:
                return Result.ok(
                    "\n\n".join(
                        "{}:\n  {}".format(minion, format_output(value))
                        for minion, value in sorted(data.items())
                    ),
                    raw=data,
                )
            return Result.fail(
                "No minions matched pattern '{}'".format(target)
            )

        value = data.get(target) if isinstance(data, dict) else None
        if value is None:
            return Result.fail("No response from minion '{}'".format(target))
        if value is False:
            return Result.fail("Command returned false", raw=value)
        return Result.ok(format_output(value), raw=value)

    def runner(self, fun, *args) -> Result:
        """Run an execution module function on the master itself."""
        body = {"client": "runner", "fun": "salt.cmd", "arg": [fun] + list(args)}
        try:
            result = self.api_call("post", "/", body)
        except SaltTimeout as e:
            return Result.fail(str(e), ErrorKind.TIMEOUT)
        except SaltAPIError as e:
            return Result.fail(str(e))
        returned = result.get("return") if isinstance(result, dict) else None
        if not returned:
            return Result.fail("No response from Salt API")
        value = returned[0]
        if runner_failed(value):
            return Result.fail(format_output(value), raw=value)
        return Result.ok(value)

    def ping(self, target="*", timeout=30):
        return self.run_command(target, "test.ping", timeout=timeout)

    def grains(self, target):
        result = self.run_command(target, "grains.items")
        if not result.success:
            return {}
        return result.details.get("raw") or {}

    # Workflow operations

    def write_scoped_document(self, target, scope, data) -> Result:
        """Create or replace the pillar document of `target` for `scope`."""
        try:
            directory = self.layout.directory(target)
            path = self.layout.path(target, scope)
        except InvalidScope as e:
            return Result.fail(str(e), ErrorKind.WRITE)
        output.step(
            target, "Writing pillar `{}`".format(scope), debug=True
        )
        for fun, args in [
            ("file.mkdir", [directory]),
            ("file.write", [path, render(scope, data)]),
            ("file.set_mode", [path, DOCUMENT_MODE]),
        ]:
            result = self.runner(fun, *args)
            if not result.success:
                return Result.fail(
                    "Failed to write pillar: {}".format(result.error),
                    result.kind or ErrorKind.WRITE,
                )
        return Result.ok(path, path=path)

    def delete_scoped_document(self, target, scope) -> Result:
        try:
            path = self.layout.path(target, scope)
        except InvalidScope as e:
            return Result.fail(str(e), ErrorKind.CLEANUP)
        output.step(
            target, "Deleting pillar `{}`".format(scope), debug=True
        )
        result = self.runner("file.remove", path)
        if not result.success:
            return Result.fail(
                "Failed to delete pillar: {}".format(result.error),
                ErrorKind.CLEANUP,
            )
        return Result.ok(path, path=path)

    def list_scoped_documents(self):
        """Paths of all documents below the pillar root."""
        result = self.runner(
            "file.find", self.layout.root, "type=f", "name=*.sls"
        )
        if not result.success:
            raise SaltAPIError.from_context(
                "Cannot list pillar documents: {}".format(result.error)
            )
        return sorted(result.output or [])

    def refresh(self, target) -> Result:
        output.step(target, "Refreshing pillar", debug=True)
        result = self.run_command(target, "saltutil.refresh_pillar")
        if not result.success:
            return Result.fail(
                "Failed to refresh pillar: {}".format(result.error),
                result.kind or ErrorKind.REFRESH,
            )
        return result

    def apply_routine(
        self, target, routine, timeout=DEFAULT_APPLY_TIMEOUT
    ) -> Result:
        output.step(
            target, "Applying state `{}`".format(routine), debug=True
        )
        result = self.run_command(
            target, "state.apply", [routine], timeout=timeout
        )
        if not result.success:
            return Result.fail(
                result.error,
                result.kind or ErrorKind.APPLY,
                output=result.output,
            )
        raw = result.details.get("raw")
        success, error = state_outcome(raw)
        if not success:
            return Result.fail(
                error, ErrorKind.APPLY, output=result.output
            )
        return Result.ok(result.output, raw=raw, stdout=state_stdout(raw))
