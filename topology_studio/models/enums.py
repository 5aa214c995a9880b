from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

import structlog

logger = structlog.get_logger("models.enums")


class NodeType(str, Enum):
    """Closed set of resource kinds a topology node can represent."""

    # Kubernetes workloads
    POD = "POD"
    SERVICE = "SERVICE"
    DEPLOYMENT = "DEPLOYMENT"
    STATEFULSET = "STATEFULSET"
    DAEMONSET = "DAEMONSET"
    REPLICASET = "REPLICASET"
    JOB = "JOB"
    CRONJOB = "CRONJOB"

    # Kubernetes configuration & storage
    CONFIGMAP = "CONFIGMAP"
    SECRET = "SECRET"
    PERSISTENTVOLUME = "PERSISTENTVOLUME"
    PERSISTENTVOLUMECLAIM = "PERSISTENTVOLUMECLAIM"
    STORAGECLASS = "STORAGECLASS"
    VOLUME = "VOLUME"

    # Kubernetes networking
    INGRESS = "INGRESS"
    NETWORKPOLICY = "NETWORKPOLICY"
    ENDPOINT = "ENDPOINT"

    # Kubernetes RBAC & security
    SERVICEACCOUNT = "SERVICEACCOUNT"
    ROLE = "ROLE"
    ROLEBINDING = "ROLEBINDING"
    CLUSTERROLE = "CLUSTERROLE"
    CLUSTERROLEBINDING = "CLUSTERROLEBINDING"
    PODSECURITYPOLICY = "PODSECURITYPOLICY"

    # Kubernetes cluster resources
    NAMESPACE = "NAMESPACE"
    NODE = "NODE"
    PRIORITYCLASS = "PRIORITYCLASS"
    RESOURCEQUOTA = "RESOURCEQUOTA"
    LIMITRANGE = "LIMITRANGE"

    # Kubernetes autoscaling
    HORIZONTALPODAUTOSCALER = "HORIZONTALPODAUTOSCALER"
    VERTICALPODAUTOSCALER = "VERTICALPODAUTOSCALER"
    PODDISRUPTIONBUDGET = "PODDISRUPTIONBUDGET"

    CUSTOMRESOURCEDEFINITION = "CUSTOMRESOURCEDEFINITION"

    # Application & infrastructure
    MICROSERVICE = "MICROSERVICE"
    EXTERNAL_DEPENDENCY = "EXTERNAL_DEPENDENCY"
    DATABASE = "DATABASE"
    CACHE = "CACHE"
    MESSAGE_QUEUE = "MESSAGE_QUEUE"
    PROXY = "PROXY"
    LOAD_BALANCER = "LOAD_BALANCER"
    GATEWAY = "GATEWAY"
    MONITORING = "MONITORING"

    # Utility
    CONFIG = "CONFIG"
    COMMAND = "COMMAND"
    DEBUGGING = "DEBUGGING"


class DependencyType(str, Enum):
    """Classification of infrastructure dependency nodes."""

    DATABASE = "DATABASE"
    CACHE = "CACHE"
    MESSAGE_QUEUE = "MESSAGE_QUEUE"
    PROXY = "PROXY"
    LOAD_BALANCER = "LOAD_BALANCER"


class GraphType(str, Enum):
    ABSTRACT = "ABSTRACT"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    KUBERNETES = "KUBERNETES"
    MICROSERVICE = "MICROSERVICE"
    DEBUGGING = "DEBUGGING"


class ConnectionCategory(str, Enum):
    HIERARCHICAL = "hierarchical"
    NETWORK = "network"
    SERVICE_MESH = "service_mesh"
    STORAGE = "storage"
    SECURITY = "security"
    CONFIGURATION = "configuration"
    MONITORING = "monitoring"
    DEPLOYMENT = "deployment"
    DISCOVERY = "discovery"
    PROXY = "proxy"
    BACKUP = "backup"
    CUSTOM = "custom"
    CROSS_GRAPH = "cross_graph"


class ConnectionType(str, Enum):
    """Semantics of a directed edge between two resources."""

    ALLOWS_TRAFFIC = "ALLOWS_TRAFFIC"
    AUTHENTICATES = "AUTHENTICATES"
    AUTHORIZES = "AUTHORIZES"
    BACKS_UP = "BACKS_UP"
    BACKS_UP_TO = "BACKS_UP_TO"
    BELONGS_TO = "BELONGS_TO"
    BINDS = "BINDS"
    BLOCKS_TRAFFIC = "BLOCKS_TRAFFIC"
    BRIDGES = "BRIDGES"
    CACHES = "CACHES"
    CLAIMS = "CLAIMS"
    COMPRESSES = "COMPRESSES"
    CONFIGURES = "CONFIGURES"
    CONNECTS_TO = "CONNECTS_TO"
    CUSTOM = "CUSTOM"
    DEPENDS_ON = "DEPENDS_ON"
    DEPENDS_ON_GRAPH = "DEPENDS_ON_GRAPH"
    DEPLOYS_TO = "DEPLOYS_TO"
    DISCOVERS = "DISCOVERS"
    EGRESS_FROM = "EGRESS_FROM"
    ENCRYPTS = "ENCRYPTS"
    EXTENDS = "EXTENDS"
    FAILS_OVER_TO = "FAILS_OVER_TO"
    FROM = "FROM"
    HAS = "HAS"
    INGRESS_TO = "INGRESS_TO"
    INHERITS_FROM = "INHERITS_FROM"
    ISOLATES = "ISOLATES"
    LIMITS = "LIMITS"
    LOAD_BALANCES = "LOAD_BALANCES"
    LOGS_TO = "LOGS_TO"
    MANAGES = "MANAGES"
    MANAGED_BY = "MANAGED_BY"
    MESH_AUTHORIZES = "MESH_AUTHORIZES"
    MESH_CIRCUIT_BREAKER = "MESH_CIRCUIT_BREAKER"
    MESH_CONNECTS = "MESH_CONNECTS"
    MESH_MIRRORS = "MESH_MIRRORS"
    MESH_RETRIES = "MESH_RETRIES"
    MESH_SPLITS_TRAFFIC = "MESH_SPLITS_TRAFFIC"
    MESH_TIMEOUTS = "MESH_TIMEOUTS"
    METRICS_TO = "METRICS_TO"
    MONITORS = "MONITORS"
    MOUNTS = "MOUNTS"
    OPTIONAL_FOR = "OPTIONAL_FOR"
    QUOTAS = "QUOTAS"
    RATE_LIMITS = "RATE_LIMITS"
    REGISTERS = "REGISTERS"
    REPLICATES = "REPLICATES"
    REQUESTS = "REQUESTS"
    REQUIRES = "REQUIRES"
    RESOLVES = "RESOLVES"
    RESTORES_FROM = "RESTORES_FROM"
    ROLLS_BACK = "ROLLS_BACK"
    ROUTES_TO = "ROUTES_TO"
    SERVICE_EXPOSES_POD = "SERVICE_EXPOSES_POD"
    SCALES = "SCALES"
    SIGNS = "SIGNS"
    SYNC = "SYNC"
    SYNCHRONIZES_WITH = "SYNCHRONIZES_WITH"
    POD_RUNS_ON_NODE = "POD_RUNS_ON_NODE"
    INGRESS_ROUTES_TO_SERVICE = "INGRESS_ROUTES_TO_SERVICE"
    MICROSERVICE_DEPENDS_ON = "MICROSERVICE_DEPENDS_ON"
    MICROSERVICE_CALLS = "MICROSERVICE_CALLS"
    MICROSERVICE_PUBLISHES_TO = "MICROSERVICE_PUBLISHES_TO"
    MICROSERVICE_SUBSCRIBES_TO = "MICROSERVICE_SUBSCRIBES_TO"
    TRACES_TO = "TRACES_TO"
    TRANSLATES_TO = "TRANSLATES_TO"
    UPDATES = "UPDATES"
    SIMILAR_TO = "SIMILAR_TO"

    @property
    def category(self) -> ConnectionCategory:
        return _CATEGORY_BY_TYPE[self]

    @property
    def is_cross_graph(self) -> bool:
        """Cross-graph edges target a bridged topology, not a local node."""
        return self.category is ConnectionCategory.CROSS_GRAPH


_CATEGORY_MEMBERS: Dict[ConnectionCategory, tuple] = {
    ConnectionCategory.HIERARCHICAL: (
        ConnectionType.BELONGS_TO,
        ConnectionType.HAS,
        ConnectionType.EXTENDS,
        ConnectionType.INHERITS_FROM,
        ConnectionType.MANAGES,
        ConnectionType.MANAGED_BY,
    ),
    ConnectionCategory.NETWORK: (
        ConnectionType.ALLOWS_TRAFFIC,
        ConnectionType.BLOCKS_TRAFFIC,
        ConnectionType.CONNECTS_TO,
        ConnectionType.EGRESS_FROM,
        ConnectionType.INGRESS_TO,
        ConnectionType.ISOLATES,
        ConnectionType.LOAD_BALANCES,
        ConnectionType.RATE_LIMITS,
        ConnectionType.ROUTES_TO,
        ConnectionType.SERVICE_EXPOSES_POD,
        ConnectionType.INGRESS_ROUTES_TO_SERVICE,
        ConnectionType.MICROSERVICE_CALLS,
        ConnectionType.MICROSERVICE_PUBLISHES_TO,
        ConnectionType.MICROSERVICE_SUBSCRIBES_TO,
    ),
    ConnectionCategory.SERVICE_MESH: (
        ConnectionType.MESH_AUTHORIZES,
        ConnectionType.MESH_CIRCUIT_BREAKER,
        ConnectionType.MESH_CONNECTS,
        ConnectionType.MESH_MIRRORS,
        ConnectionType.MESH_RETRIES,
        ConnectionType.MESH_SPLITS_TRAFFIC,
        ConnectionType.MESH_TIMEOUTS,
    ),
    ConnectionCategory.STORAGE: (
        ConnectionType.CACHES,
        ConnectionType.CLAIMS,
        ConnectionType.COMPRESSES,
        ConnectionType.MOUNTS,
        ConnectionType.REPLICATES,
        ConnectionType.SYNC,
        ConnectionType.SYNCHRONIZES_WITH,
    ),
    ConnectionCategory.SECURITY: (
        ConnectionType.AUTHENTICATES,
        ConnectionType.AUTHORIZES,
        ConnectionType.BINDS,
        ConnectionType.ENCRYPTS,
        ConnectionType.SIGNS,
    ),
    ConnectionCategory.CONFIGURATION: (
        ConnectionType.CONFIGURES,
        ConnectionType.LIMITS,
        ConnectionType.QUOTAS,
        ConnectionType.UPDATES,
    ),
    ConnectionCategory.MONITORING: (
        ConnectionType.LOGS_TO,
        ConnectionType.METRICS_TO,
        ConnectionType.MONITORS,
        ConnectionType.TRACES_TO,
    ),
    ConnectionCategory.DEPLOYMENT: (
        ConnectionType.DEPENDS_ON,
        ConnectionType.DEPLOYS_TO,
        ConnectionType.OPTIONAL_FOR,
        ConnectionType.POD_RUNS_ON_NODE,
        ConnectionType.REQUIRES,
        ConnectionType.ROLLS_BACK,
        ConnectionType.SCALES,
        ConnectionType.MICROSERVICE_DEPENDS_ON,
    ),
    ConnectionCategory.DISCOVERY: (
        ConnectionType.DISCOVERS,
        ConnectionType.REGISTERS,
        ConnectionType.RESOLVES,
    ),
    ConnectionCategory.PROXY: (
        ConnectionType.FROM,
        ConnectionType.REQUESTS,
        ConnectionType.TRANSLATES_TO,
    ),
    ConnectionCategory.BACKUP: (
        ConnectionType.BACKS_UP,
        ConnectionType.BACKS_UP_TO,
        ConnectionType.FAILS_OVER_TO,
        ConnectionType.RESTORES_FROM,
    ),
    ConnectionCategory.CUSTOM: (
        ConnectionType.CUSTOM,
        ConnectionType.SIMILAR_TO,
    ),
    ConnectionCategory.CROSS_GRAPH: (
        ConnectionType.BRIDGES,
        ConnectionType.DEPENDS_ON_GRAPH,
    ),
}

_CATEGORY_BY_TYPE: Dict[ConnectionType, ConnectionCategory] = {
    member: category
    for category, members in _CATEGORY_MEMBERS.items()
    for member in members
}


# --------------------------------------------------------------------------- #
# Job status
# --------------------------------------------------------------------------- #


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


# Older backends report queued/started/error instead of the canonical names.
_LEGACY_STATUS_MAP: Dict[str, JobStatus] = {
    "pending": JobStatus.PENDING,
    "queued": JobStatus.PENDING,
    "running": JobStatus.RUNNING,
    "started": JobStatus.RUNNING,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "error": JobStatus.FAILED,
    "cancelled": JobStatus.CANCELLED,
}


def normalize_job_status(value: Optional[str]) -> Optional[JobStatus]:
    """
    Map a status string reported by the generation service to a JobStatus.

    Matching is case-insensitive and understands legacy aliases. Returns None
    for empty or unrecognised values.
    """
    if not value:
        return None
    return _LEGACY_STATUS_MAP.get(value.strip().lower())


def coerce_job_status(value: Optional[str]) -> JobStatus:
    """
    Like normalize_job_status, but unknown values are treated as pending.
    """
    status = normalize_job_status(value)
    if status is None:
        logger.warning("unknown_job_status", reported=value, treated_as=JobStatus.PENDING.value)
        return JobStatus.PENDING
    return status
