"""Access-control policy parsing and filter and SSH rule generation for mesh VPN networks."""

__version__ = "0.1.0"

__all__ = ["netset", "tailcfg", "matcher", "models", "policy", "rules", "loader"]