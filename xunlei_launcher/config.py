"""
Configuration for the Xunlei launcher.

Settings come from four layers, later ones winning:
  - built-in defaults
  - an optional YAML file (--config-file)
  - XUNLEI_* environment variables
  - command-line options

The DSM package layout and the environment handed to the backend daemon
are typed structures rather than free-form mappings so that a misspelled
key cannot silently break the daemon's startup.
"""

import ipaddress
import logging
import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

# ============================================================================
# Package constants
# ============================================================================

SYNOPKG_PKGNAME = "pan-xunlei-com"
SYNOPKG_PKGBASE = Path("/var/packages") / SYNOPKG_PKGNAME
SYNOPKG_DSM_VERSION_MAJOR = "7"
SYNOPKG_DSM_VERSION_MINOR = "2"
SYNOPKG_DSM_VERSION_BUILD = "64570"
SYNOPKG_WEB_UI_HOME = f"/webman/3rdparty/{SYNOPKG_PKGNAME}/index.cgi"

DEFAULT_CONFIG_PATH = Path("/xunlei/data")
DEFAULT_DOWNLOAD_PATH = Path("/xunlei/downloads")
DEFAULT_BIND_DOWNLOAD_PATH = Path("/xunlei")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5055
PORT_MIN = 1024
PORT_MAX = 65535

SESSION_COOKIE = "XUNLEI_SID"
SESSION_TTL_SECONDS = 3600
DEFAULT_STOP_TIMEOUT_SECONDS = 10.0

# Machine name -> suffix of the launcher binary shipped in the package
_ARCH_SUFFIX = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


class ConfigError(Exception):
    """Raised when a configuration value is missing or malformed."""
    pass


def launcher_arch(machine: Optional[str] = None) -> str:
    """Map the host machine name to the launcher binary suffix."""
    machine = (machine or platform.machine()).lower()
    try:
        return _ARCH_SUFFIX[machine]
    except KeyError:
        raise ConfigError(f"Unsupported architecture: {machine}") from None


@dataclass(frozen=True)
class PackageLayout:
    """
    Fixed paths of the installed DSM package.

    Everything hangs off the package base directory so tests can point the
    whole layout at a temporary directory.
    """
    base: Path = SYNOPKG_PKGBASE
    arch: str = "amd64"
    web_ui_home: str = SYNOPKG_WEB_UI_HOME

    @property
    def target(self) -> Path:
        return self.base / "target"

    @property
    def var(self) -> Path:
        return self.target / "var"

    @property
    def launcher_exe(self) -> Path:
        return self.target / f"xunlei-pan-cli-launcher.{self.arch}"

    @property
    def cgi_exe(self) -> Path:
        return self.target / "ui" / "index.cgi"

    @property
    def sock_file(self) -> str:
        return f"unix://{self.var / f'{SYNOPKG_PKGNAME}.sock'}"

    @property
    def launcher_sock(self) -> str:
        return f"unix://{self.var / f'{SYNOPKG_PKGNAME}-launcher.sock'}"

    @property
    def pid_file(self) -> Path:
        return self.var / f"{SYNOPKG_PKGNAME}.pid"

    @property
    def env_file(self) -> Path:
        return self.var / f"{SYNOPKG_PKGNAME}.env"

    @property
    def log_file(self) -> Path:
        return self.var / f"{SYNOPKG_PKGNAME}.log"

    @property
    def launch_pid_file(self) -> Path:
        return self.var / f"{SYNOPKG_PKGNAME}-launcher.pid"

    @property
    def launch_log_file(self) -> Path:
        return self.var / f"{SYNOPKG_PKGNAME}-launcher.log"

    @property
    def install_log(self) -> Path:
        return self.var / f"{SYNOPKG_PKGNAME}-install.log"


@dataclass(frozen=True)
class BackendEnvironment:
    """
    Integration variables understood by the Xunlei daemon and its CGI UI.

    Field names are the exact environment variable names.
    """
    DriveListen: str
    OS_VERSION: str
    HOME: str
    ConfigPath: str
    DownloadPATH: str
    SYNOPKG_DSM_VERSION_MAJOR: str
    SYNOPKG_DSM_VERSION_MINOR: str
    SYNOPKG_DSM_VERSION_BUILD: str
    SYNOPKG_PKGDEST: str
    SYNOPKG_PKGNAME: str
    SVC_CWD: str
    PID_FILE: str
    ENV_FILE: str
    LOG_FILE: str
    LAUNCH_LOG_FILE: str
    LAUNCH_PID_FILE: str
    INST_LOG: str
    GIN_MODE: str = "release"

    @classmethod
    def from_settings(cls, settings: "Settings") -> "BackendEnvironment":
        layout = settings.layout
        return cls(
            DriveListen=layout.sock_file,
            OS_VERSION=(
                f"dsm {SYNOPKG_DSM_VERSION_MAJOR}.{SYNOPKG_DSM_VERSION_MINOR}"
                f"-{SYNOPKG_DSM_VERSION_BUILD}"
            ),
            HOME=str(settings.config_path),
            ConfigPath=str(settings.config_path),
            DownloadPATH=str(settings.mount_bind_download_path),
            SYNOPKG_DSM_VERSION_MAJOR=SYNOPKG_DSM_VERSION_MAJOR,
            SYNOPKG_DSM_VERSION_MINOR=SYNOPKG_DSM_VERSION_MINOR,
            SYNOPKG_DSM_VERSION_BUILD=SYNOPKG_DSM_VERSION_BUILD,
            SYNOPKG_PKGDEST=str(layout.target),
            SYNOPKG_PKGNAME=SYNOPKG_PKGNAME,
            SVC_CWD=str(layout.target),
            PID_FILE=str(layout.pid_file),
            ENV_FILE=str(layout.env_file),
            LOG_FILE=str(layout.log_file),
            LAUNCH_LOG_FILE=str(layout.launch_log_file),
            LAUNCH_PID_FILE=str(layout.launch_pid_file),
            INST_LOG=str(layout.install_log),
        )

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass
class Settings:
    """Runtime settings shared by the supervisor and the panel."""
    auth_user: Optional[str] = None
    auth_password: Optional[str] = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    uid: int = field(default_factory=os.getuid)
    gid: int = field(default_factory=os.getgid)
    debug: bool = False
    config_path: Path = DEFAULT_CONFIG_PATH
    download_path: Path = DEFAULT_DOWNLOAD_PATH
    mount_bind_download_path: Path = DEFAULT_BIND_DOWNLOAD_PATH
    session_ttl: int = SESSION_TTL_SECONDS
    cgi_timeout: Optional[float] = None
    max_connections: Optional[int] = None
    stop_timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS
    layout: PackageLayout = field(default_factory=PackageLayout)

    @property
    def listen(self) -> str:
        return f"{self.host}:{self.port}"

    def process_identity(self) -> dict[str, int]:
        """
        user/group keyword arguments for spawning children as uid/gid.

        Empty when the ids already match this process, so an unprivileged
        launcher can still spawn.
        """
        identity = {}
        if self.uid != os.getuid():
            identity["user"] = self.uid
        if self.gid != os.getgid():
            identity["group"] = self.gid
        return identity


# ============================================================================
# Value parsers
# ============================================================================

def parse_port(value: Any) -> int:
    """Parse a listen port, accepting only the unprivileged range."""
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"`{value}` isn't a port number") from None
    if not PORT_MIN <= port <= PORT_MAX:
        raise ConfigError(f"Port not in range {PORT_MIN}-{PORT_MAX}")
    return port


def parse_host(value: Any) -> str:
    """Validate a listen address (IPv4 or IPv6 literal)."""
    try:
        return str(ipaddress.ip_address(str(value)))
    except ValueError:
        raise ConfigError(f"`{value}` isn't a ip address") from None


def parse_id(value: Any, name: str) -> int:
    try:
        ident = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"`{value}` isn't a valid {name}") from None
    if ident < 0:
        raise ConfigError(f"`{value}` isn't a valid {name}")
    return ident


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_optional_positive(value: Any, name: str, kind=float):
    if value is None or value == "":
        return None
    try:
        parsed = kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"`{value}` isn't a valid {name}") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return parsed


# ============================================================================
# Loading
# ============================================================================

# Environment variable -> settings key
ENV_VARS = {
    "XUNLEI_AUTH_USER": "auth_user",
    "XUNLEI_AUTH_PASSWORD": "auth_password",
    "XUNLEI_HOST": "host",
    "XUNLEI_PORT": "port",
    "XUNLEI_UID": "uid",
    "XUNLEI_GID": "gid",
    "XUNLEI_DEBUG": "debug",
}

_SETTING_KEYS = {
    "auth_user", "auth_password", "host", "port", "uid", "gid", "debug",
    "config_path", "download_path", "mount_bind_download_path",
    "session_ttl", "cgi_timeout", "max_connections", "stop_timeout",
    "package_base", "arch", "web_ui_home",
}


def load_config_file(path: Path) -> dict:
    """Load a YAML settings file. The top level must be a mapping."""
    with open(path) as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ConfigError(f"{path} must be a YAML mapping, got {type(config).__name__}")
    unknown = set(config) - _SETTING_KEYS
    if unknown:
        raise ConfigError(f"Unknown settings in {path}: {', '.join(sorted(unknown))}")
    return config


def load_settings(
    config_file: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Merge every configuration layer into a validated Settings object.

    Args:
        config_file: Optional YAML file.
        overrides:   Values from the command line; None entries are ignored.
        environ:     Environment to read XUNLEI_* from (defaults to os.environ).
    """
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}

    if config_file is not None:
        raw.update(load_config_file(config_file))
        logger.debug("Loaded settings from %s", config_file)

    for env_name, key in ENV_VARS.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            raw[key] = value

    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    settings = Settings()
    if raw.get("auth_user") is not None:
        settings.auth_user = str(raw["auth_user"])
    if raw.get("auth_password") is not None:
        settings.auth_password = str(raw["auth_password"])
    if "host" in raw:
        settings.host = parse_host(raw["host"])
    if "port" in raw:
        settings.port = parse_port(raw["port"])
    if "uid" in raw:
        settings.uid = parse_id(raw["uid"], "uid")
    if "gid" in raw:
        settings.gid = parse_id(raw["gid"], "gid")
    if "debug" in raw:
        settings.debug = parse_bool(raw["debug"])
    for key in ("config_path", "download_path", "mount_bind_download_path"):
        if key in raw:
            setattr(settings, key, Path(raw[key]))
    if "session_ttl" in raw:
        settings.session_ttl = _parse_optional_positive(raw["session_ttl"], "session_ttl", int) \
            or SESSION_TTL_SECONDS
    if "cgi_timeout" in raw:
        settings.cgi_timeout = _parse_optional_positive(raw["cgi_timeout"], "cgi_timeout")
    if "max_connections" in raw:
        settings.max_connections = _parse_optional_positive(
            raw["max_connections"], "max_connections", int
        )
    if "stop_timeout" in raw:
        settings.stop_timeout = _parse_optional_positive(raw["stop_timeout"], "stop_timeout") \
            or DEFAULT_STOP_TIMEOUT_SECONDS

    settings.layout = PackageLayout(
        base=Path(raw.get("package_base", SYNOPKG_PKGBASE)),
        arch=raw.get("arch") or launcher_arch(),
        web_ui_home=raw.get("web_ui_home", SYNOPKG_WEB_UI_HOME),
    )
    return settings


def config_summary(settings: Settings) -> dict[str, Any]:
    """Settings as a loggable dict, with credentials masked."""
    summary = {
        key: str(value) if isinstance(value, Path) else value
        for key, value in asdict(settings).items()
        if key != "layout"
    }
    for key in ("auth_user", "auth_password"):
        if summary.get(key) is not None:
            summary[key] = "***"
    summary["package_base"] = str(settings.layout.base)
    summary["web_ui_home"] = settings.layout.web_ui_home
    return summary
