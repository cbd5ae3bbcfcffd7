#!/usr/bin/env python3
"""hairpin-proxy controller - Ingress hostname hairpinning

Keeps DNS resolution for the cluster's Ingress hostnames pointed at the
in-cluster hairpin-proxy Service, so that traffic from pods (or from the node
itself) to an external hostname is routed straight back into the cluster
instead of leaving through the external load balancer.

Supported targets:
    - CoreDNS: rewrite rules inside the ".:53 { ... }" block of the
      kube-system/coredns ConfigMap (default, one instance per cluster)
    - /etc/hosts: a single host entry in a node-local hosts file, selected
      with --etc-hosts PATH (one instance per node, e.g. a DaemonSet)

Every line this controller owns ends with "# Added by hairpin-proxy". All other
lines are left untouched.

Environment variables:

    Rewrite destination:
        SERVICE_NAME           hairpin-proxy Service name (default: hairpin-proxy)
        KUBE_NAMESPACE         hairpin-proxy Service namespace (default: hairpin-proxy)

    Ingress discovery:
        INGRESS_API_VERSION    Ingress API group/version (default: networking.k8s.io/v1)
        INGRESS_HOSTS_SOURCE   Field holding the hostnames: "spec.tls.hosts" (default)
                               or "spec.rules.host"
        INGRESS_CLASS_NAME     Only consider Ingresses of this class (default: all).
                               Matches spec.ingressClassName, or the legacy
                               kubernetes.io/ingress.class annotation when unset

    Kubernetes API:
        IN_CLUSTER             Use the in-cluster ServiceAccount (default: true).
                               Set to false to use the local kubeconfig instead.
        KUBE_TOKEN_TTL         Seconds before the API client is recreated (default: 600)

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL          Poll interval in seconds (default: 15, minimum: 1)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        HAIRPIN_CONFIG_PATH    Optional YAML file with the same options as
                               lower-case keys (default: /config/hairpin-proxy.yaml).
                               Environment variables take precedence.
                               Example config file:
                                 service_name: hairpin-proxy
                                 namespace: hairpin-proxy
                                 poll_interval: 30
                                 ingress_class_name: nginx
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import socket
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import yaml
from kubernetes import client, config, dynamic
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

# =============================================================================
# Constants
# =============================================================================

COMMENT_LINE_SUFFIX = "# Added by hairpin-proxy"
COREDNS_SERVER_BLOCK = ".:53 {"
COREDNS_NAMESPACE = "kube-system"
COREDNS_CONFIG_MAP = "coredns"
COREDNS_CONFIG_KEY = "Corefile"
INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"

HOSTNAME_RE = re.compile(r"[A-Za-z0-9.\-_]+")

DEFAULT_CONFIG_PATH = "/config/hairpin-proxy.yaml"

# =============================================================================
# Logging Setup
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class HairpinProxyError(Exception):
    """Base class for fatal controller errors."""


class CorefileError(HairpinProxyError):
    """The CoreDNS configuration does not have the expected structure."""


class ResolutionError(HairpinProxyError):
    """The rewrite destination could not be resolved to an address."""


class StartupError(HairpinProxyError):
    """Invalid command line or configuration, raised before the loop starts."""


# =============================================================================
# Enums
# =============================================================================


class HostSource(Enum):
    """Ingress field the hairpinned hostnames are read from."""

    TLS_HOSTS = "spec.tls.hosts"
    RULES_HOST = "spec.rules.host"


class TargetMode(Enum):
    """Configuration target the controller keeps patched.

    COREDNS: rewrite rules in the cluster's CoreDNS Corefile.
    ETC_HOSTS: one host entry in a node-local hosts file. Covers kubelet and
               the node's container engine, which do not go through CoreDNS.
    """

    COREDNS = "coredns"
    ETC_HOSTS = "etc-hosts"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Process configuration, resolved once at startup."""

    service_name: str = "hairpin-proxy"
    namespace: str = "hairpin-proxy"
    poll_interval: int = 15
    kube_token_ttl: int = 600
    ingress_api_version: str = "networking.k8s.io/v1"
    ingress_hosts_source: str = HostSource.TLS_HOSTS.value
    ingress_class_name: str = ""
    in_cluster: bool = True
    sync_mode: str = "watch"

    @property
    def dns_rewrite_destination(self) -> str:
        return f"{self.service_name}.{self.namespace}.svc.cluster.local"


@dataclass(frozen=True)
class KubeSession:
    """Kubernetes API client with a bounded lifetime.

    Never mutated: an expired session is replaced by a new one.
    """

    api_client: Any
    expires_at: float

    def expired(self, now: float) -> bool:
        return now > self.expires_at


# =============================================================================
# Configuration
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_interval(value: Any, default: int, name: str) -> int:
    """Parse a positive number of seconds, clamped to a minimum of 1."""
    if value is None or str(value).strip() == "":
        return default
    try:
        seconds = int(str(value).strip())
    except ValueError:
        logger.warning(f"Invalid value for {name}: {value!r}, using {default}")
        return default
    return max(1, seconds)


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load optional settings from a YAML file.

    Returns an empty dict if the file doesn't exist or can't be parsed.
    """
    if not config_path or not os.path.isfile(config_path):
        return {}

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} is not a mapping, ignoring it")
        return {}
    return data


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from environment variables and the optional YAML file.

    Precedence: environment variable, then config file key, then default.
    """
    if environ is None:
        environ = os.environ

    file_data = load_config_file(environ.get("HAIRPIN_CONFIG_PATH", DEFAULT_CONFIG_PATH))
    defaults = Settings()

    def option(env_name: str, key: str, default: Any) -> Any:
        if env_name in environ:
            return environ[env_name]
        if file_data.get(key) is not None:
            return file_data[key]
        return default

    return Settings(
        service_name=str(option("SERVICE_NAME", "service_name", defaults.service_name)).strip(),
        namespace=str(option("KUBE_NAMESPACE", "namespace", defaults.namespace)).strip(),
        poll_interval=_parse_interval(
            option("POLL_INTERVAL", "poll_interval", None), defaults.poll_interval, "POLL_INTERVAL"
        ),
        kube_token_ttl=_parse_interval(
            option("KUBE_TOKEN_TTL", "kube_token_ttl", None),
            defaults.kube_token_ttl,
            "KUBE_TOKEN_TTL",
        ),
        ingress_api_version=str(
            option("INGRESS_API_VERSION", "ingress_api_version", defaults.ingress_api_version)
        ).strip(),
        ingress_hosts_source=str(
            option("INGRESS_HOSTS_SOURCE", "ingress_hosts_source", defaults.ingress_hosts_source)
        ).strip(),
        ingress_class_name=str(
            option("INGRESS_CLASS_NAME", "ingress_class_name", defaults.ingress_class_name)
        ).strip(),
        in_cluster=_parse_bool(option("IN_CLUSTER", "in_cluster", None), default=True),
        sync_mode=str(option("SYNC_MODE", "sync_mode", defaults.sync_mode)).strip().lower(),
    )


def validate_config(settings: Settings) -> List[str]:
    """Validate configuration. Returns a list of errors, warnings are only logged."""
    errors = []

    if not settings.service_name or not settings.namespace:
        errors.append("SERVICE_NAME and KUBE_NAMESPACE must not be empty")

    supported_sources = [s.value for s in HostSource]
    if settings.ingress_hosts_source not in supported_sources:
        logger.warning(
            f"Unsupported INGRESS_HOSTS_SOURCE '{settings.ingress_hosts_source}'. "
            f"Supported: {', '.join(supported_sources)}. No hostnames will be hairpinned."
        )

    if settings.sync_mode not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")

    return errors


# =============================================================================
# Kubernetes Session
# =============================================================================


def create_kube_session(
    ttl_seconds: int,
    *,
    in_cluster: bool = True,
    clock: Callable[[], float] = time.monotonic,
) -> KubeSession:
    """Load credentials and return a fresh API client valid for ttl_seconds."""
    configuration = client.Configuration()
    if in_cluster:
        config.load_incluster_config(client_configuration=configuration)
    else:
        config.load_kube_config(client_configuration=configuration)
    return KubeSession(
        api_client=client.ApiClient(configuration),
        expires_at=clock() + ttl_seconds,
    )


# =============================================================================
# Hostname Extraction
# =============================================================================


def _ingress_class_name(ingress: Dict[str, Any]) -> str:
    spec = ingress.get("spec") or {}
    class_name = spec.get("ingressClassName")
    if class_name:
        return class_name
    annotations = (ingress.get("metadata") or {}).get("annotations") or {}
    return annotations.get(INGRESS_CLASS_ANNOTATION) or ""


def hosts_from_ingress(ingress: Dict[str, Any], host_source: HostSource) -> List[Any]:
    """Return the raw (unvalidated) hostnames declared by one Ingress."""
    spec = ingress.get("spec") or {}
    if host_source is HostSource.TLS_HOSTS:
        return [host for tls in spec.get("tls") or [] for host in (tls or {}).get("hosts") or []]
    return [(rule or {}).get("host") for rule in spec.get("rules") or []]


def extract_hostnames(
    ingresses: Sequence[Dict[str, Any]],
    class_name: str = "",
    host_source: Any = HostSource.TLS_HOSTS,
) -> List[str]:
    """Return the sorted, unique, valid hostnames of all matching Ingresses."""
    try:
        source = HostSource(host_source)
    except ValueError:
        logger.warning(f"Unsupported host source {host_source}")
        return []

    if class_name:
        ingresses = [i for i in ingresses if _ingress_class_name(i) == class_name]

    hosts = set()
    for ingress in ingresses:
        for host in hosts_from_ingress(ingress, source):
            if not host or not isinstance(host, str):
                continue
            if not HOSTNAME_RE.fullmatch(host):
                logger.debug(f"Skipping invalid hostname {host!r}")
                continue
            hosts.add(host)
    return sorted(hosts)


# =============================================================================
# Config Patching
# =============================================================================


def _is_managed_line(line: str, marker: str) -> bool:
    return line.strip().endswith(marker)


def corefile_with_rewrite_rules(
    original_corefile: str,
    hosts: Sequence[str],
    destination: str,
    marker: str = COMMENT_LINE_SUFFIX,
) -> str:
    """Return the Corefile with one rewrite rule per host.

    Previously added rules are recognised by their marker and replaced, so the
    transformation is idempotent. The rules go at the start of the main
    ".:53 { ... }" server block.
    """
    lines = [
        line for line in original_corefile.strip().split("\n") if not _is_managed_line(line, marker)
    ]

    rewrite_lines = [f"    rewrite name {host} {destination} {marker}" for host in hosts]

    main_server_line = next(
        (i for i, line in enumerate(lines) if line.strip().startswith(COREDNS_SERVER_BLOCK)),
        None,
    )
    if main_server_line is None:
        raise CorefileError(f"Can't find main server line '{COREDNS_SERVER_BLOCK}' in Corefile")

    lines[main_server_line + 1 : main_server_line + 1] = rewrite_lines
    return "\n".join(lines)


def resolve_address(hostname: str) -> str:
    try:
        return socket.gethostbyname(hostname)
    except OSError as e:
        raise ResolutionError(f"Unable to resolve {hostname}: {e}") from e


def etchosts_with_rewrite_rules(
    original_etchosts: str,
    hosts: Sequence[str],
    destination: str,
    resolver: Callable[[str], str] = resolve_address,
    marker: str = COMMENT_LINE_SUFFIX,
) -> str:
    """Return the hosts file with a single entry mapping all hosts to the proxy.

    The destination is resolved once per call. Any number of previously added
    entries collapse into the one new entry.
    """
    our_lines = []
    original_lines = []
    stripped = original_etchosts.strip()
    for line in stripped.split("\n") if stripped else []:
        (our_lines if _is_managed_line(line, marker) else original_lines).append(line)

    address = resolver(destination)
    new_rewrite_line = f"{address}\t{' '.join(hosts)} {marker}"

    if our_lines == [new_rewrite_line]:
        # Leave the file alone so that the ordering of other lines doesn't matter.
        return original_etchosts

    return "\n".join(original_lines + [new_rewrite_line]) + "\n"


# =============================================================================
# Ingress Source Interface and Implementation
# =============================================================================


class IngressSource(ABC):
    """Abstract base class for Ingress discovery."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def list_ingresses(self, session: KubeSession) -> List[Dict[str, Any]]:
        """Return all Ingress manifests as dictionaries."""
        pass


class KubernetesIngressSource(IngressSource):
    """Lists Ingresses in all namespaces through the dynamic client."""

    def __init__(self, api_version: str = "networking.k8s.io/v1"):
        self._api_version = api_version

    @property
    def name(self) -> str:
        return f"Kubernetes ({self._api_version})"

    def list_ingresses(self, session: KubeSession) -> List[Dict[str, Any]]:
        try:
            dyn = dynamic.DynamicClient(session.api_client)
            ingress_api = dyn.resources.get(api_version=self._api_version, kind="Ingress")
            result = ingress_api.get()
        except (NotFoundError, ResourceNotFoundError) as e:
            logger.warning(f"Unable to list ingresses in {self._api_version}: {e}")
            return []

        items = result.to_dict().get("items") or []
        logger.debug(f"Found {len(items)} Ingress resource(s) in {self._api_version}")
        return items


# =============================================================================
# Config Target Interface and Implementations
# =============================================================================


class ConfigTarget(ABC):
    """Abstract base class for the configuration the controller keeps patched."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the target name for logging."""
        pass

    @property
    @abstractmethod
    def mode(self) -> TargetMode:
        pass

    @abstractmethod
    def read(self, session: KubeSession) -> str:
        """Return the current configuration text."""
        pass

    @abstractmethod
    def write(self, session: KubeSession, text: str) -> None:
        """Replace the configuration text."""
        pass

    @abstractmethod
    def patch(self, text: str, hosts: Sequence[str]) -> str:
        """Return text with exactly the managed lines for hosts."""
        pass


class CoreDNSConfigMapTarget(ConfigTarget):
    """Rewrite rules in the Corefile of the CoreDNS ConfigMap."""

    def __init__(
        self,
        destination: str,
        namespace: str = COREDNS_NAMESPACE,
        config_map: str = COREDNS_CONFIG_MAP,
        key: str = COREDNS_CONFIG_KEY,
    ):
        self._destination = destination
        self._namespace = namespace
        self._config_map = config_map
        self._key = key

    @property
    def name(self) -> str:
        return f"ConfigMap {self._namespace}/{self._config_map}"

    @property
    def mode(self) -> TargetMode:
        return TargetMode.COREDNS

    def read(self, session: KubeSession) -> str:
        core_api = client.CoreV1Api(session.api_client)
        cm = core_api.read_namespaced_config_map(self._config_map, self._namespace)
        data = cm.data or {}
        if self._key not in data:
            raise CorefileError(f"{self.name} has no '{self._key}' key")
        return data[self._key]

    def write(self, session: KubeSession, text: str) -> None:
        core_api = client.CoreV1Api(session.api_client)
        core_api.patch_namespaced_config_map(
            self._config_map, self._namespace, {"data": {self._key: text}}
        )

    def patch(self, text: str, hosts: Sequence[str]) -> str:
        return corefile_with_rewrite_rules(text, hosts, self._destination)


class EtcHostsFileTarget(ConfigTarget):
    """A single host entry in a local hosts file."""

    def __init__(
        self,
        path: str,
        destination: str,
        resolver: Callable[[str], str] = resolve_address,
    ):
        self._path = path
        self._destination = destination
        self._resolver = resolver

    @property
    def name(self) -> str:
        return self._path

    @property
    def mode(self) -> TargetMode:
        return TargetMode.ETC_HOSTS

    def read(self, session: KubeSession) -> str:
        with open(self._path, "r", encoding="utf-8") as f:
            return f.read()

    def write(self, session: KubeSession, text: str) -> None:
        with open(self._path, "w", encoding="utf-8") as f:
            f.write(text)

    def patch(self, text: str, hosts: Sequence[str]) -> str:
        return etchosts_with_rewrite_rules(text, hosts, self._destination, self._resolver)


# =============================================================================
# Mode Selection
# =============================================================================


def validate_etc_hosts_path(path: str) -> None:
    if not os.path.exists(path):
        raise StartupError(f"File {path} doesn't exist!")
    if not os.access(path, os.W_OK):
        raise StartupError(f"File {path} isn't writable!")


def select_target(etc_hosts_path: Optional[str], settings: Settings) -> ConfigTarget:
    """Pick the config target once, before the loop starts.

    A given but invalid path is fatal; it never falls back to CoreDNS mode.
    """
    if etc_hosts_path:
        validate_etc_hosts_path(etc_hosts_path)
        logger.info(
            f"Starting in /etc/hosts mutation mode on {etc_hosts_path}. "
            "(Intended to be run as a DaemonSet: one instance per Node.)"
        )
        return EtcHostsFileTarget(etc_hosts_path, settings.dns_rewrite_destination)

    logger.info(
        "Starting in CoreDNS mode. "
        "(Intended to be run as a Deployment: one instance per cluster.)"
    )
    return CoreDNSConfigMapTarget(settings.dns_rewrite_destination)


# =============================================================================
# Core Controller
# =============================================================================


class HairpinProxyController:
    def __init__(
        self,
        *,
        ingress_source: IngressSource,
        target: ConfigTarget,
        session_factory: Callable[[], KubeSession],
        class_name: str = "",
        host_source: Any = HostSource.TLS_HOSTS,
        poll_interval: int = 15,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ingress_source = ingress_source
        self.target = target
        self.class_name = class_name
        self.host_source = host_source
        self.poll_interval = max(1, poll_interval)
        self._session_factory = session_factory
        self._clock = clock
        self._sleep = sleep
        self._session: Optional[KubeSession] = None

    @property
    def session(self) -> Optional[KubeSession]:
        return self._session

    def ensure_session(self) -> KubeSession:
        if self._session is None:
            self._session = self._session_factory()
        elif self._session.expired(self._clock()):
            logger.info("Renewing k8s api token")
            self._session = self._session_factory()
        return self._session

    def fetch_ingress_hosts(self, session: KubeSession) -> List[str]:
        ingresses = self.ingress_source.list_ingresses(session)
        return extract_hostnames(ingresses, self.class_name, self.host_source)

    def sync_once(self) -> bool:
        """Run one poll cycle. Returns True if the target was rewritten."""
        logger.info(
            f"Polling all Ingress resources from {self.ingress_source.name} "
            f"and {self.target.name}..."
        )
        session = self.ensure_session()
        hosts = self.fetch_ingress_hosts(session)
        logger.debug(f"Desired hostnames: {', '.join(hosts) or '(none)'}")

        old_text = self.target.read(session)
        new_text = self.target.patch(old_text, hosts)

        if old_text.strip() == new_text.strip():
            logger.debug(f"No changes needed in {self.target.name}")
            return False

        logger.info(
            f"{self.target.name} has changed! New contents:\n{new_text}\n"
            f"Writing {len(hosts)} hostname(s) to {self.target.name}..."
        )
        self.target.write(session, new_text)
        return True

    def run(self) -> None:
        """Poll forever. Errors propagate so a supervisor can restart the process."""
        logger.info(f"Starting main loop with {self.poll_interval}s polling interval.")
        while True:
            self.sync_once()
            self._sleep(self.poll_interval)


# =============================================================================
# Main
# =============================================================================


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hairpin-proxy-controller",
        description="Point Ingress hostnames at the in-cluster hairpin-proxy.",
    )
    parser.add_argument(
        "--etc-hosts",
        metavar="ETCHOSTSPATH",
        default=None,
        help="Path to writable /etc/hosts file",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    settings = load_settings()

    errors = validate_config(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        target = select_target(args.etc_hosts, settings)
    except StartupError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"Target: {target.name} ({target.mode.value} mode)")
    logger.info(f"Rewrite destination: {settings.dns_rewrite_destination}")
    logger.info(f"Ingress API version: {settings.ingress_api_version}")
    logger.info(f"Ingress hosts source: {settings.ingress_hosts_source}")
    if settings.ingress_class_name:
        logger.info(f"Ingress class filter: {settings.ingress_class_name}")
    logger.info(f"Sync mode: {settings.sync_mode}")

    controller = HairpinProxyController(
        ingress_source=KubernetesIngressSource(settings.ingress_api_version),
        target=target,
        session_factory=lambda: create_kube_session(
            settings.kube_token_ttl, in_cluster=settings.in_cluster
        ),
        class_name=settings.ingress_class_name,
        host_source=settings.ingress_hosts_source,
        poll_interval=settings.poll_interval,
    )

    try:
        if settings.sync_mode == "once":
            controller.sync_once()
            return
        controller.run()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
