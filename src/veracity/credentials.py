import datetime
import re
import urllib.parse

from veracity import InvalidCredential, UsageConflict

UUID_PATTERN = re.compile(
    r"\A[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}"
    r"-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}\Z"
)
URL_PATTERN = re.compile(r"\Ahttps?://.+\Z")


def now():
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def mask(secret):
    """Preview of a secret that is safe to show outside a deployment."""
    if not secret:
        return "Not set"
    secret = str(secret)
    if len(secret) > 12:
        return "{}...{}".format(secret[:8], secret[-4:])
    return "***hidden***"


def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Credential(object):
    """A named secret with usage metadata.

    Subclasses name the attribute holding the secret (`secret_attribute`)
    and the cleartext attributes persisted alongside it (`fields`).

    """

    kind = None
    secret_attribute = "secret"
    fields = ()

    def __init__(
        self,
        name,
        enabled=True,
        usage_count=0,
        last_used_at=None,
        notes="",
        **kw,
    ):
        self.name = name
        self.enabled = parse_bool(enabled)
        self.usage_count = int(usage_count or 0)
        if isinstance(last_used_at, str):
            last_used_at = (
                datetime.datetime.fromisoformat(last_used_at)
                if last_used_at
                else None
            )
        self.last_used_at = last_used_at
        self.notes = notes or ""
        for key in list(self.fields) + [self.secret_attribute]:
            setattr(self, key, kw.pop(key, getattr(self, key, None)))
        if kw:
            raise TypeError(
                "Unexpected attributes for {}: {}".format(
                    self.kind, ", ".join(sorted(kw))
                )
            )

    def __repr__(self):
        return "<{} {!r} secret={}>".format(
            self.__class__.__name__, self.name, self.masked_secret
        )

    __str__ = __repr__

    @property
    def secret(self):
        return getattr(self, self.secret_attribute)

    @property
    def masked_secret(self):
        return mask(self.secret)

    @property
    def endpoint(self):
        raise NotImplementedError()

    @property
    def last_used_display(self):
        if not self.last_used_at:
            return "Never"
        days = round((now() - self.last_used_at).total_seconds() / 86400)
        return "{} days ago".format(days)

    def set_enabled(self, flag):
        self.enabled = bool(flag)
        return self.enabled

    def increment_usage(self, expected_count, when=None):
        """Record one use if nobody else did since `expected_count` was read."""
        if self.usage_count != expected_count:
            raise UsageConflict.from_context(
                self.name, expected_count, self.usage_count
            )
        self.usage_count = expected_count + 1
        self.last_used_at = when or now()
        return self.usage_count

    def problems(self):
        problems = []
        if not self.name or not str(self.name).strip():
            problems.append("name can't be blank")
        if not self.secret:
            problems.append(
                "{} can't be blank".format(self.secret_attribute)
            )
        return problems

    def validate(self):
        problems = self.problems()
        if problems:
            raise InvalidCredential.from_context(self.name, problems)

    def metadata(self):
        """Cleartext attributes for persistence, excluding the secret."""
        result = {
            "kind": self.kind,
            "enabled": "true" if self.enabled else "false",
            "usage_count": str(self.usage_count),
            "last_used_at": (
                self.last_used_at.isoformat() if self.last_used_at else ""
            ),
            "notes": self.notes,
        }
        for key in self.fields:
            value = getattr(self, key)
            if isinstance(value, bool):
                value = "true" if value else "false"
            result[key] = "" if value is None else str(value)
        return result


class NetbirdSetupKey(Credential):
    """Setup key that enrols a host into a NetBird network."""

    kind = "netbird"
    secret_attribute = "setup_key"
    fields = ("management_url", "port", "netbird_group")

    port = 443

    def __init__(self, name, **kw):
        super().__init__(name, **kw)
        self.port = int(self.port) if self.port not in (None, "") else None

    @property
    def full_management_url(self):
        url = str(self.management_url or "")
        if not url.startswith("http"):
            url = "https://" + url
        if self.port and self.port != 443 and not re.search(r":\d+\Z", url):
            url += ":{}".format(self.port)
        return url

    endpoint = full_management_url

    def problems(self):
        problems = super().problems()
        if not self.management_url:
            problems.append("management_url can't be blank")
        elif not URL_PATTERN.match(self.full_management_url):
            problems.append("management_url must be a valid URL")
        if self.setup_key and not UUID_PATTERN.match(str(self.setup_key)):
            problems.append(
                "setup_key must be a valid UUID format"
                " (e.g., 4F0F9A28-C7F6-4E87-B855-015FC929FC63)"
            )
        if self.port is not None and not 0 < self.port < 65536:
            problems.append("port must be between 1 and 65535")
        return problems


class ProxmoxApiKey(Credential):
    """API token for a Proxmox VE cluster, used from its host's minion."""

    kind = "proxmox"
    secret_attribute = "api_token"
    fields = (
        "proxmox_url",
        "minion_id",
        "username",
        "realm",
        "token_name",
        "verify_ssl",
    )

    realm = "pam"
    verify_ssl = True

    def __init__(self, name, **kw):
        super().__init__(name, **kw)
        self.verify_ssl = parse_bool(self.verify_ssl)
        if not self.minion_id and self.proxmox_url:
            self.minion_id = urllib.parse.urlsplit(self.proxmox_url).hostname
        if self.username and "!" in self.username and not self.token_name:
            self.username, self.token_name = self.username.split("!", 1)

    @property
    def endpoint(self):
        return self.proxmox_url

    @property
    def api_username(self):
        return "{}@{}".format(self.username, self.realm)

    @property
    def token(self):
        return "{}={}".format(self.token_name, self.api_token)

    def problems(self):
        problems = super().problems()
        if not self.proxmox_url:
            problems.append("proxmox_url can't be blank")
        elif not URL_PATTERN.match(self.proxmox_url):
            problems.append("proxmox_url must be a valid URL")
        for key in ("username", "token_name", "minion_id"):
            if not getattr(self, key):
                problems.append("{} can't be blank".format(key))
        return problems


KINDS = {cls.kind: cls for cls in [NetbirdSetupKey, ProxmoxApiKey]}


def from_metadata(name, metadata, secret):
    metadata = dict(metadata)
    kind = metadata.pop("kind", None)
    if kind not in KINDS:
        raise InvalidCredential.from_context(
            name, ["unknown kind {!r}".format(kind)]
        )
    cls = KINDS[kind]
    metadata[cls.secret_attribute] = secret
    return cls(name, **metadata)
