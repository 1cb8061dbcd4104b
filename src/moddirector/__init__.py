"""Mod-Director: layered chat moderation with progressive discipline and raid detection."""

__version__ = "0.1.0"
