import requests

from veracity._output import output

DEFAULT_PRIORITY = 5


class NullNotifier(object):
    """Used when no Gotify server is configured."""

    def send(self, title, message, priority=None, extras=None):
        return False


class GotifyNotifier(object):
    """Push messages to a Gotify server.

    Delivery is best effort: any failure is reported through `output` and
    `send` returns False.

    """

    def __init__(
        self,
        url,
        token,
        verify_ssl=True,
        priority=DEFAULT_PRIORITY,
        timeout=10,
        session=None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.verify_ssl = verify_ssl
        self.priority = priority
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        gotify = config["gotify"]
        if not gotify.get("url") or not gotify.get("token"):
            return NullNotifier()
        return cls(
            gotify["url"],
            gotify["token"],
            verify_ssl=gotify.as_bool("verify_ssl"),
            priority=gotify.as_int("priority"),
        )

    def send(self, title, message, priority=None, extras=None):
        payload = {
            "title": title,
            "message": message,
            "priority": self.priority if priority is None else priority,
        }
        if extras:
            payload["extras"] = extras
        try:
            response = self.session.post(
                self.url + "/message",
                json=payload,
                headers={"X-Gotify-Key": self.token},
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            output.step("gotify", "Notification failed: {}".format(e), red=True)
            return False
        output.annotate("Sent notification `{}`".format(title), debug=True)
        return True
