"""Deployment orchestrator for the agent-scheduler Kubernetes stack."""

__version__ = "0.1.0"
