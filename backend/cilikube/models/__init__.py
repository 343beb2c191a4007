from cilikube.models.cluster import Cluster

__all__ = ["Cluster"]
