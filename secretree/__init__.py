"""Encrypted document trees: per-value encryption, MACs, Shamir key splitting, PGP master keys."""

__version__ = "0.1.0"

__all__ = ["shamir", "tree", "metadata", "document", "gnupg", "publish", "pgp"]