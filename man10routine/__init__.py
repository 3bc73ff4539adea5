"""Daily maintenance routine for Minecraft servers managed by ArgoCD."""

__version__ = "0.1.0"
