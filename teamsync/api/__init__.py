"""HTTP surface of the sync engine (FastAPI)."""
