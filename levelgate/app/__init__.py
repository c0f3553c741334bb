"""Levelgate HTTP service (FastAPI)."""
