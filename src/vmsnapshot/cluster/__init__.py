"""Cluster object model: metadata, consumed resource kinds and the kind registry."""
