"""kubelab - resource-aware local Kubernetes lab orchestrator."""

__version__ = "0.1.0"
