"""Agora social API backend."""
