"""Cluster management components."""

from .replication import ReplicaSet, ReplicationGroup, ReplicaState

__all__ = ['ReplicaSet', 'ReplicationGroup', 'ReplicaState']
