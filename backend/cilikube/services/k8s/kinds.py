from __future__ import annotations

from dataclasses import dataclass

from cilikube.exceptions import UpstreamNotFound


@dataclass(frozen=True)
class ResourceKind:
    """A built-in kind and the typed API group that serves it.

    ``stem`` is the snake_case suffix used by the generated client methods,
    e.g. ``list_namespaced_<stem>`` or ``read_<stem>``.
    """

    plural: str
    kind: str
    api_version: str
    api_class: str
    stem: str
    namespaced: bool = True

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]


_KINDS = (
    # core/v1
    ResourceKind("pods", "Pod", "v1", "CoreV1Api", "pod"),
    ResourceKind("services", "Service", "v1", "CoreV1Api", "service"),
    ResourceKind("configmaps", "ConfigMap", "v1", "CoreV1Api", "config_map"),
    ResourceKind("secrets", "Secret", "v1", "CoreV1Api", "secret"),
    ResourceKind("serviceaccounts", "ServiceAccount", "v1", "CoreV1Api", "service_account"),
    ResourceKind("endpoints", "Endpoints", "v1", "CoreV1Api", "endpoints"),
    ResourceKind("events", "Event", "v1", "CoreV1Api", "event"),
    ResourceKind("persistentvolumeclaims", "PersistentVolumeClaim", "v1", "CoreV1Api", "persistent_volume_claim"),
    ResourceKind("resourcequotas", "ResourceQuota", "v1", "CoreV1Api", "resource_quota"),
    ResourceKind("limitranges", "LimitRange", "v1", "CoreV1Api", "limit_range"),
    ResourceKind("replicationcontrollers", "ReplicationController", "v1", "CoreV1Api", "replication_controller"),
    ResourceKind("nodes", "Node", "v1", "CoreV1Api", "node", namespaced=False),
    ResourceKind("namespaces", "Namespace", "v1", "CoreV1Api", "namespace", namespaced=False),
    ResourceKind("persistentvolumes", "PersistentVolume", "v1", "CoreV1Api", "persistent_volume", namespaced=False),
    # apps/v1
    ResourceKind("deployments", "Deployment", "apps/v1", "AppsV1Api", "deployment"),
    ResourceKind("statefulsets", "StatefulSet", "apps/v1", "AppsV1Api", "stateful_set"),
    ResourceKind("daemonsets", "DaemonSet", "apps/v1", "AppsV1Api", "daemon_set"),
    ResourceKind("replicasets", "ReplicaSet", "apps/v1", "AppsV1Api", "replica_set"),
    # batch/v1
    ResourceKind("jobs", "Job", "batch/v1", "BatchV1Api", "job"),
    ResourceKind("cronjobs", "CronJob", "batch/v1", "BatchV1Api", "cron_job"),
    # networking.k8s.io/v1
    ResourceKind("ingresses", "Ingress", "networking.k8s.io/v1", "NetworkingV1Api", "ingress"),
    ResourceKind("networkpolicies", "NetworkPolicy", "networking.k8s.io/v1", "NetworkingV1Api", "network_policy"),
    ResourceKind(
        "ingressclasses", "IngressClass", "networking.k8s.io/v1", "NetworkingV1Api", "ingress_class", namespaced=False
    ),
    # storage.k8s.io/v1
    ResourceKind("storageclasses", "StorageClass", "storage.k8s.io/v1", "StorageV1Api", "storage_class", namespaced=False),
    # rbac.authorization.k8s.io/v1
    ResourceKind("roles", "Role", "rbac.authorization.k8s.io/v1", "RbacAuthorizationV1Api", "role"),
    ResourceKind("rolebindings", "RoleBinding", "rbac.authorization.k8s.io/v1", "RbacAuthorizationV1Api", "role_binding"),
    ResourceKind(
        "clusterroles", "ClusterRole", "rbac.authorization.k8s.io/v1", "RbacAuthorizationV1Api", "cluster_role",
        namespaced=False,
    ),
    ResourceKind(
        "clusterrolebindings", "ClusterRoleBinding", "rbac.authorization.k8s.io/v1", "RbacAuthorizationV1Api",
        "cluster_role_binding", namespaced=False,
    ),
    # autoscaling/v2, policy/v1
    ResourceKind(
        "horizontalpodautoscalers", "HorizontalPodAutoscaler", "autoscaling/v2", "AutoscalingV2Api",
        "horizontal_pod_autoscaler",
    ),
    ResourceKind("poddisruptionbudgets", "PodDisruptionBudget", "policy/v1", "PolicyV1Api", "pod_disruption_budget"),
)

BUILTIN_KINDS: dict[str, ResourceKind] = {k.plural: k for k in _KINDS}


def get_kind(plural: str) -> ResourceKind:
    try:
        return BUILTIN_KINDS[plural]
    except KeyError:
        raise UpstreamNotFound(f"unsupported resource kind {plural!r}") from None
