from __future__ import annotations

import os
import ssl
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import structlog
import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client import ApiClient, Configuration
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from cilikube.config import KubernetesConfig
from cilikube.core.rate_limiter import RateLimiter
from cilikube.exceptions import (
    AppException,
    AuthFailed,
    ConfigInvalid,
    Unreachable,
    classify_api_exception,
)
from cilikube.services.k8s.discovery import DiscoveryCache

logger = structlog.get_logger(__name__)

IN_CLUSTER = "in-cluster"
DEFAULT_PATH_SENTINELS = ("", "default")


@dataclass(frozen=True)
class ClientSource:
    """Where a cluster's credentials come from.

    Exactly one of ``kubeconfig`` (raw bytes) or ``path`` is used; ``path`` may
    be ``in-cluster`` for the pod service account or ``default``/empty for the
    user-home kubeconfig.
    """

    kubeconfig: bytes | None = None
    path: str | None = None
    context: str | None = None
    qps: float | None = None
    burst: int | None = None

    @classmethod
    def from_bytes(cls, data: bytes, context: str | None = None) -> "ClientSource":
        return cls(kubeconfig=data, context=context)

    @classmethod
    def from_path(cls, path: str | None, context: str | None = None) -> "ClientSource":
        return cls(path=path or "", context=context)

    @property
    def is_in_cluster(self) -> bool:
        return self.kubeconfig is None and self.path == IN_CLUSTER

    def describe(self) -> str:
        if self.kubeconfig is not None:
            return "kubeconfig-bytes"
        if self.is_in_cluster:
            return IN_CLUSTER
        return self.path or "default"


@dataclass
class TransportConfig:
    """Connection parameters shared by the typed client and raw HTTP/WebSocket transports."""

    host: str
    verify_ssl: bool = True
    ssl_ca_cert: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    qps: float = 50.0
    burst: int = 100
    timeout: float | None = None
    configuration: Configuration | None = field(default=None, repr=False, compare=False)
    _ssl_context: ssl.SSLContext | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_configuration(
        cls, cfg: Configuration, *, qps: float, burst: int, timeout: float | None = None
    ) -> "TransportConfig":
        return cls(
            host=cfg.host.rstrip("/"),
            verify_ssl=bool(cfg.verify_ssl),
            ssl_ca_cert=cfg.ssl_ca_cert,
            cert_file=cfg.cert_file,
            key_file=cfg.key_file,
            qps=qps,
            burst=burst,
            timeout=timeout,
            configuration=cfg,
        )

    def auth_headers(self) -> dict[str, str]:
        """Credentials for one raw request.

        Read from the client configuration on every call so tokens rotated by
        its refresh hook (exec plugins, projected service account tokens) are
        picked up. May block while a refresh hook runs.
        """
        headers = dict(self.headers)
        cfg = self.configuration
        if cfg is None:
            return headers
        for setting in cfg.auth_settings().values():
            if setting.get("in") == "header" and setting.get("value"):
                key = setting["key"]
                headers["Authorization" if key.lower() == "authorization" else key] = setting["value"]
        if "Authorization" not in headers and (cfg.username or cfg.password):
            headers["Authorization"] = cfg.get_basic_auth_token()
        return headers

    @property
    def scheme(self) -> str:
        return self.host.split("://", 1)[0] if "://" in self.host else "https"

    def ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = build_ssl_context(
                verify=self.verify_ssl,
                ca_file=self.ssl_ca_cert,
                cert_file=self.cert_file,
                key_file=self.key_file,
            )
        return self._ssl_context


def build_ssl_context(
    *,
    verify: bool,
    ca_file: str | None = None,
    cert_file: str | None = None,
    key_file: str | None = None,
) -> ssl.SSLContext:
    if verify:
        ctx = ssl.create_default_context(cafile=ca_file)
    else:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    if cert_file:
        ctx.load_cert_chain(cert_file, key_file)
    return ctx


class ClusterClient:
    """Live handle on one cluster.

    The typed facet is the shared ``ApiClient`` (``api()`` hands out typed API
    groups bound to it), the dynamic facet is ``CustomObjectsApi`` and the
    discovery facet is a :class:`DiscoveryCache`; all three share one
    connection pool.
    """

    def __init__(
        self,
        api_client: ApiClient,
        transport: TransportConfig,
        *,
        insecure: bool = False,
        discovery_ttl: float = 600.0,
        source: str = "",
    ) -> None:
        self.api_client = api_client
        self.transport = transport
        self.insecure = insecure
        self.source = source
        self.discovery = DiscoveryCache(api_client, ttl=discovery_ttl)
        self.rate_limiter = RateLimiter(transport.qps, interval=1.0, burst=transport.burst)
        self.version: str | None = None
        self.probe_error: AppException | None = None
        self._apis: dict[str, Any] = {}
        self._apis_lock = threading.Lock()
        self._closed = False
        self._http_client: httpx.AsyncClient | None = None

    @property
    def server(self) -> str:
        return self.transport.host

    def api(self, api_class_name: str) -> Any:
        """Typed API group (e.g. ``CoreV1Api``) bound to this client's connection pool."""
        with self._apis_lock:
            api = self._apis.get(api_class_name)
            if api is None:
                api_cls = getattr(client, api_class_name)
                api = api_cls(self.api_client)
                self._apis[api_class_name] = api
            return api

    @property
    def custom_objects(self) -> client.CustomObjectsApi:
        return self.api("CustomObjectsApi")

    def server_version(self, timeout: float | None = None) -> str:
        return self.discovery.server_version(timeout)

    def sanitize(self, obj: Any) -> Any:
        return self.api_client.sanitize_for_serialization(obj)

    def new_api_client(self) -> ApiClient:
        """Separate ApiClient over the same configuration, owned by the caller."""
        return ApiClient(configuration=self.api_client.configuration)

    def http_client(self, connect_timeout: float = 10.0) -> httpx.AsyncClient:
        """Pooled raw HTTP client for pass-through requests, created on first use."""
        with self._apis_lock:
            if self._http_client is None or self._http_client.is_closed:
                self._http_client = httpx.AsyncClient(
                    verify=self.transport.ssl_context(),
                    timeout=httpx.Timeout(connect_timeout, read=None),
                    follow_redirects=False,
                )
            return self._http_client

    def close(self) -> None:
        """Close the typed transport; the raw HTTP pool needs :meth:`aclose`."""
        if self._closed:
            return
        self._closed = True
        try:
            self.api_client.close()
        except (OSError, RuntimeError) as exc:
            logger.debug("kubernetes.client_close_failed", server=self.server, error=str(exc))

    async def aclose(self) -> None:
        with self._apis_lock:
            http_client, self._http_client = self._http_client, None
        if http_client is not None:
            await http_client.aclose()
        self.close()


def default_kubeconfig_path() -> str:
    env_value = os.environ.get("KUBECONFIG", "")
    if env_value:
        return env_value.split(os.pathsep)[0]
    return str(Path.home() / ".kube" / "config")


def _insecure_copy(cfg: Configuration) -> Configuration:
    insecure = Configuration()
    insecure.host = cfg.host
    insecure.api_key = dict(cfg.api_key or {})
    insecure.api_key_prefix = dict(cfg.api_key_prefix or {})
    insecure.username = cfg.username
    insecure.password = cfg.password
    insecure.refresh_api_key_hook = getattr(cfg, "refresh_api_key_hook", None)
    insecure.verify_ssl = False
    insecure.ssl_ca_cert = None
    insecure.cert_file = None
    insecure.key_file = None
    return insecure


def _is_tls_verification_error(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (ssl.SSLCertVerificationError, urllib3.exceptions.SSLError, ssl.SSLError)):
            return True
        reason = getattr(current, "reason", None)
        current = reason if isinstance(reason, BaseException) else current.__cause__ or current.__context__
    return False


class ClientFactory:
    """Builds :class:`ClusterClient` objects from kubeconfig sources."""

    def __init__(self, settings: KubernetesConfig | None = None) -> None:
        self.settings = settings or KubernetesConfig()

    def _load_configuration(self, source: ClientSource) -> Configuration:
        cfg = Configuration()
        try:
            if source.kubeconfig is not None:
                try:
                    data = yaml.safe_load(source.kubeconfig)
                except yaml.YAMLError as exc:
                    raise ConfigInvalid(f"kubeconfig is not valid YAML: {exc}") from exc
                if not isinstance(data, dict) or not data.get("clusters"):
                    raise ConfigInvalid("kubeconfig has no clusters")
                config.load_kube_config_from_dict(
                    data,
                    context=source.context,
                    client_configuration=cfg,
                    persist_config=False,
                )
            elif source.is_in_cluster:
                config.load_incluster_config(client_configuration=cfg)
            else:
                path = source.path
                if path is None or path in DEFAULT_PATH_SENTINELS:
                    path = default_kubeconfig_path()
                if not Path(path).expanduser().is_file():
                    raise ConfigInvalid(f"kubeconfig file not found: {path}")
                config.load_kube_config(
                    config_file=str(Path(path).expanduser()),
                    context=source.context,
                    client_configuration=cfg,
                    persist_config=False,
                )
        except ConfigException as exc:
            raise ConfigInvalid(f"invalid kubeconfig: {exc}") from exc
        except (ValueError, TypeError, KeyError) as exc:
            raise ConfigInvalid(f"invalid kubeconfig: {exc}") from exc
        if not cfg.host:
            raise ConfigInvalid("kubeconfig does not define a server")
        return cfg

    def _construct(self, cfg: Configuration, source: ClientSource, *, insecure: bool) -> ClusterClient:
        transport = TransportConfig.from_configuration(
            cfg,
            qps=source.qps or self.settings.qps,
            burst=source.burst or self.settings.burst,
            timeout=self.settings.probe_timeout,
        )
        # Loading the TLS material eagerly surfaces bad CA or client certs here
        transport.ssl_context()
        api_client = ApiClient(configuration=cfg)
        return ClusterClient(
            api_client,
            transport,
            insecure=insecure,
            discovery_ttl=self.settings.discovery_cache_ttl,
            source=source.describe(),
        )

    def _construct_insecure(self, cfg: Configuration, source: ClientSource, cause: Exception) -> ClusterClient:
        logger.warning(
            "kubernetes.insecure_fallback",
            server=cfg.host,
            source=source.describe(),
            error=str(cause),
        )
        try:
            return self._construct(_insecure_copy(cfg), source, insecure=True)
        except (ssl.SSLError, OSError, ValueError) as exc:
            raise Unreachable(f"cannot construct transport for {cfg.host}: {exc}") from exc

    def build(self, source: ClientSource, *, probe: bool = True, strict: bool = False) -> ClusterClient:
        """Build a live client.

        With ``probe`` the server version is fetched once; a failed probe is
        recorded on ``client.probe_error`` unless ``strict`` asks for it to be
        raised.
        """
        cfg = self._load_configuration(source)
        fallback_used = False
        try:
            cluster_client = self._construct(cfg, source, insecure=not cfg.verify_ssl)
        except (ssl.SSLError, OSError, ValueError) as exc:
            if not self.settings.insecure_fallback:
                raise Unreachable(f"cannot construct transport for {cfg.host}: {exc}") from exc
            cluster_client = self._construct_insecure(cfg, source, exc)
            fallback_used = True

        if not probe:
            return cluster_client

        error = self.probe(cluster_client)
        if (
            error is not None
            and not fallback_used
            and not cluster_client.insecure
            and self.settings.insecure_fallback
            and _is_tls_verification_error(error)
        ):
            cluster_client.close()
            cluster_client = self._construct_insecure(cfg, source, error)
            error = self.probe(cluster_client)

        if error is not None:
            cluster_client.probe_error = _as_app_error(error, cfg.host)
            if strict:
                cluster_client.close()
                raise cluster_client.probe_error
        return cluster_client

    def probe(self, cluster_client: ClusterClient) -> Exception | None:
        """Fetch version and discovery; returns the failure instead of raising."""
        try:
            cluster_client.version = cluster_client.server_version(self.settings.probe_timeout)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as exc:
            logger.warning("kubernetes.probe_failed", server=cluster_client.server, error=str(exc))
            return exc
        cluster_client.probe_error = None
        try:
            count = cluster_client.discovery.refresh()
            logger.debug("kubernetes.discovery_cached", server=cluster_client.server, resources=count)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as exc:
            logger.warning("kubernetes.discovery_failed", server=cluster_client.server, error=str(exc))
        return None


def _as_app_error(exc: Exception, server: str) -> AppException:
    if isinstance(exc, AppException):
        return exc
    if isinstance(exc, ApiException):
        if exc.status in (401, 403):
            return AuthFailed(f"credentials rejected by {server}", details={"upstream_status": exc.status})
        return classify_api_exception(exc)
    return Unreachable(f"cannot reach {server}: {exc}")
