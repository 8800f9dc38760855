"""Aura: a local e-book shelf backed by a transactional object store."""

__version__ = "0.1.0"
