"""Cluster API infrastructure provider for VMware Cloud Director."""

__version__ = "0.1.0"
