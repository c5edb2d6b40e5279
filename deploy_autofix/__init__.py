"""deploy-autofix: classify deployment failures and repair them through pull requests."""

__version__ = "0.1.0"
