import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from uapoller._UAErrors_ import ConfigurationError

SECURITY_POLICIES = ["None", "Basic128Rsa15", "Basic256", "Basic256Sha256",
                     "Aes128Sha256RsaOaep", "Aes256Sha256RsaPss", "auto"]
SECURITY_MODES = ["None", "Sign", "SignAndEncrypt", "auto"]
AUTH_METHODS = ["Anonymous", "UserName", "Certificate"]
TIMESTAMP_SOURCES = ["gather", "server", "source"]

DEFAULT_METRIC_NAME = "opcua"
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 5.0

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Any) -> float:
    """Convert a number of seconds or a Go style duration ("1m30s") to seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"invalid duration {value!r}")
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigurationError(f"invalid duration {value!r}")
    return total


def parse_status_code(value: Any) -> int:
    """Parse a status code given as hex ("0xC0") or decimal text."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid status code {value!r}")
    if isinstance(value, int):
        code = value
    else:
        text = str(value).strip()
        try:
            if text.lower().startswith("0x"):
                code = int(text[2:], 16)
            else:
                code = int(text, 10)
        except ValueError:
            raise ConfigurationError(f"invalid status code {value!r}") from None
    if not 0 <= code <= 0xFFFFFFFF:
        raise ConfigurationError(f"status code {value!r} out of 32-bit range")
    return code


@dataclass
class NodeSetting:
    field_name: str = ""
    namespace: str = ""
    identifier_type: str = ""
    identifier: str = ""
    tags: List[List[str]] = field(default_factory=list)
    default_tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeSetting":
        data = _object(data, "node")
        _warn_unknown("node", data, ["name", "namespace", "identifier_type", "identifier", "tags", "default_tags"])
        where = f"node {data.get('name', '')!r}"
        default_tags = _object(data.get("default_tags", {}), f"default_tags of {where}")
        return cls(
            field_name=str(data.get("name", "")),
            namespace=_text(data.get("namespace", "")),
            identifier_type=str(data.get("identifier_type", "")),
            identifier=_text(data.get("identifier", "")),
            tags=_tag_pairs(data.get("tags", []), where),
            default_tags={str(k): str(v) for k, v in default_tags.items()},
        )


@dataclass
class NodeGroupSettings:
    metric_name: str = ""
    namespace: str = ""
    identifier_type: str = ""
    tags: List[List[str]] = field(default_factory=list)
    nodes: List[NodeSetting] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeGroupSettings":
        data = _object(data, "group")
        _warn_unknown("group", data, ["name", "namespace", "identifier_type", "tags", "nodes"])
        where = f"group {data.get('name', '')!r}"
        return cls(
            metric_name=str(data.get("name", "")),
            namespace=_text(data.get("namespace", "")),
            identifier_type=str(data.get("identifier_type", "")),
            tags=_tag_pairs(data.get("tags", []), where),
            nodes=[NodeSetting.from_dict(node) for node in _sequence(data.get("nodes", []), f"nodes of {where}")],
        )


@dataclass
class Workarounds:
    additional_valid_status_codes: List[str] = field(default_factory=list)

    def status_codes(self) -> List[int]:
        return [parse_status_code(code) for code in self.additional_valid_status_codes]


@dataclass
class ReadClientWorkarounds:
    use_unregistered_reads: bool = False


@dataclass
class ReadClientConfig:
    metric_name: str = DEFAULT_METRIC_NAME
    endpoint: str = "opc.tcp://localhost:4840"
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    security_policy: str = "auto"
    security_mode: str = "auto"
    certificate: str = ""
    private_key: str = ""
    auth_method: str = "Anonymous"
    username: str = ""
    password: str = ""
    timestamp: str = "gather"
    workarounds: Workarounds = field(default_factory=Workarounds)
    request_workarounds: ReadClientWorkarounds = field(default_factory=ReadClientWorkarounds)
    root_nodes: List[NodeSetting] = field(default_factory=list)
    groups: List[NodeGroupSettings] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadClientConfig":
        """Build a config from the mapping a TOML/JSON loader produces."""
        data = _object(data, "configuration")
        _warn_unknown("client", data, [
            "name", "endpoint", "connect_timeout", "request_timeout", "security_policy",
            "security_mode", "certificate", "private_key", "auth_method", "username",
            "password", "timestamp", "workarounds", "request_workarounds", "nodes",
            "group", "groups",
        ])
        config = cls()
        simple = {
            "name": "metric_name",
            "endpoint": "endpoint",
            "security_policy": "security_policy",
            "security_mode": "security_mode",
            "certificate": "certificate",
            "private_key": "private_key",
            "auth_method": "auth_method",
            "username": "username",
            "password": "password",
            "timestamp": "timestamp",
        }
        for key, attr in simple.items():
            if key in data:
                setattr(config, attr, str(data[key]))
        if "connect_timeout" in data:
            config.connect_timeout = parse_duration(data["connect_timeout"])
        if "request_timeout" in data:
            config.request_timeout = parse_duration(data["request_timeout"])

        workarounds = _object(data.get("workarounds", {}), "workarounds")
        codes = _sequence(workarounds.get("additional_valid_status_codes", []), "additional_valid_status_codes")
        config.workarounds = Workarounds(additional_valid_status_codes=[str(c) for c in codes])
        request_workarounds = _object(data.get("request_workarounds", {}), "request_workarounds")
        config.request_workarounds = ReadClientWorkarounds(
            use_unregistered_reads=_flag(request_workarounds.get("use_unregistered_reads", False),
                                         "use_unregistered_reads")
        )

        config.root_nodes = [NodeSetting.from_dict(node) for node in _sequence(data.get("nodes", []), "nodes")]
        groups = _sequence(data.get("group", []), "group") + _sequence(data.get("groups", []), "groups")
        config.groups = [NodeGroupSettings.from_dict(group) for group in groups]
        return config

    def validate(self):
        """Check client level settings; node level checks happen while building mappings."""
        if not self.endpoint:
            raise ConfigurationError("endpoint url is empty")
        if self.security_policy not in SECURITY_POLICIES:
            raise ConfigurationError(f"invalid security policy {self.security_policy!r}, expected one of {SECURITY_POLICIES}")
        if self.security_mode not in SECURITY_MODES:
            raise ConfigurationError(f"invalid security mode {self.security_mode!r}, expected one of {SECURITY_MODES}")
        if self.security_policy == "None" and self.security_mode not in ("None", "auto"):
            raise ConfigurationError(f"security policy 'None' cannot be used with security mode {self.security_mode!r}")
        if self.security_mode == "None" and self.security_policy not in ("None", "auto"):
            raise ConfigurationError(f"security mode 'None' cannot be used with security policy {self.security_policy!r}")
        if self.auth_method not in AUTH_METHODS:
            raise ConfigurationError(f"invalid auth method {self.auth_method!r}, expected one of {AUTH_METHODS}")
        if self.timestamp not in TIMESTAMP_SOURCES:
            raise ConfigurationError(f"invalid timestamp source {self.timestamp!r}, expected one of {TIMESTAMP_SOURCES}")
        if self.connect_timeout <= 0 or self.request_timeout <= 0:
            raise ConfigurationError("connect_timeout and request_timeout must be positive")
        self.workarounds.status_codes()


def load_config(path: str) -> ReadClientConfig:
    """Read a JSON parameter file into a ReadClientConfig."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"invalid config format in {path}, expected an object")
    config = ReadClientConfig.from_dict(data)
    logging.debug(f"_UAConfig_.load_config: Loaded config from {path}: {describe(config)}")
    return config


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _object(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"{what} must be an object, got {type(value).__name__}: {value!r}")
    return value


def _sequence(value: Any, what: str) -> List[Any]:
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"{what} must be a list, got {type(value).__name__}: {value!r}")
    return list(value)


def _tag_pairs(value: Any, where: str) -> List[List[str]]:
    """Tag entries stay as given; only the container types are checked here."""
    pairs = []
    for index, pair in enumerate(_sequence(value, f"tags of {where}")):
        if not isinstance(pair, (list, tuple)):
            raise ConfigurationError(f"tag {index} of {where} must be a [name, value] pair, got {pair!r}")
        pairs.append(list(pair))
    return pairs


def _flag(value: Any, what: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ConfigurationError(f"{what} must be true or false, got {value!r}")


def _warn_unknown(kind: str, data: Dict[str, Any], known: List[str]):
    for key in data:
        if key not in known:
            logging.warning(f"_UAConfig_.from_dict: Ignoring unknown {kind} setting {key!r}")


def describe(config: Optional[ReadClientConfig]) -> str:
    """Short one line summary used in log messages, without credentials."""
    if config is None:
        return "<no config>"
    node_count = len(config.root_nodes) + sum(len(g.nodes) for g in config.groups)
    return (f"endpoint={config.endpoint}, policy={config.security_policy}, mode={config.security_mode}, "
            f"auth={config.auth_method}, nodes={node_count}, groups={len(config.groups)}")
