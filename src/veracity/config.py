import os
import os.path
from configparser import RawConfigParser

from veracity import ConfigurationError
from veracity._output import output

DEFAULT_CONFIG = "veracity.cfg"

# (section, option) -> environment variable taking precedence over the file
ENVIRONMENT_OVERRIDES = {
    ("salt", "api_url"): "SALT_API_URL",
    ("salt", "username"): "SALT_API_USERNAME",
    ("salt", "password"): "SALT_API_PASSWORD",
    ("salt", "eauth"): "SALT_API_EAUTH",
    ("gotify", "url"): "GOTIFY_URL",
    ("gotify", "token"): "GOTIFY_APP_TOKEN",
}

DEFAULTS = {
    "salt": {
        "api_url": "http://localhost:8001",
        "username": "saltapi",
        "eauth": "pam",
        "timeout": "60",
        "verify_ssl": "true",
    },
    "pillar": {
        "root": "/srv/pillar/minions",
    },
    "store": {
        "path": "credentials.cfg",
        "recipients": "",
    },
    "deploy": {
        "jobs": "1",
        "timeout": "",
        "lock_dir": "",
        "deadline": "",
    },
    "inventory": {
        "path": "",
    },
    "gotify": {
        "verify_ssl": "true",
        "priority": "5",
    },
}

KNOWN_SECTIONS = set(DEFAULTS)


class ConfigSection(dict):

    def as_list(self, option):
        result = self.get(option, "")
        if "," in result:
            result = [x.strip() for x in result.split(",")]
        elif "\n" in result:
            result = (x.strip() for x in result.split("\n"))
            result = [x for x in result]
        else:
            result = [result.strip()]
        return [x for x in result if x]

    def as_bool(self, option):
        value = self.get(option, "").strip().lower()
        if value in ("1", "true", "yes", "on"):
            return True
        if value in ("", "0", "false", "no", "off"):
            return False
        raise ConfigurationError.from_context(
            f"Not a boolean value for `{option}`: {value!r}"
        )

    def as_int(self, option):
        value = self.get(option, "").strip()
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError.from_context(
                f"Not an integer value for `{option}`: {value!r}"
            )

    def as_float(self, option, default=None):
        value = self.get(option, "").strip()
        if not value:
            return default
        try:
            return float(value)
        except ValueError:
            raise ConfigurationError.from_context(
                f"Not a number for `{option}`: {value!r}"
            )


class Config(object):
    """Settings from an INI file, with defaults and environment overrides."""

    def __init__(self, path=None, environ=None):
        config = RawConfigParser()
        config.optionxform = lambda optionstr: optionstr
        self.path = path
        if path:
            if not os.path.exists(path):
                raise ConfigurationError.from_context(
                    f"Configuration file `{path}` does not exist."
                )
            config.read(path)
        self.config = config
        self.environ = os.environ if environ is None else environ

        for section in self.config.sections():
            if section not in KNOWN_SECTIONS:
                raise ConfigurationError.from_context(
                    "Superfluous section in configuration", section=section
                )

    @classmethod
    def discover(cls, path=None):
        if path:
            return cls(path)
        if os.path.exists(DEFAULT_CONFIG):
            output.annotate(
                f"Using configuration `{DEFAULT_CONFIG}`", debug=True
            )
            return cls(DEFAULT_CONFIG)
        return cls()

    def __contains__(self, section):
        return self.config.has_section(section)

    def __getitem__(self, section):
        if section not in KNOWN_SECTIONS:
            raise KeyError(section)
        result = ConfigSection(DEFAULTS[section])
        if self.config.has_section(section):
            result.update(
                (x, self.config.get(section, x))
                for x in self.config.options(section)
            )
        for (env_section, option), variable in ENVIRONMENT_OVERRIDES.items():
            if env_section != section:
                continue
            if self.environ.get(variable):
                result[option] = self.environ[variable]
        return result

    def get(self, section, default=None):
        try:
            return self[section]
        except KeyError:
            return default

    def salt_password(self):
        password = self["salt"].get("password")
        if not password:
            raise ConfigurationError.from_context(
                "SALT_API_PASSWORD environment variable (or `password` in"
                " the [salt] section) is required.",
                section="salt",
            )
        return password
