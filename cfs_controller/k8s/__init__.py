"""Kubernetes object access and custom resource models."""
