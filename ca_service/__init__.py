"""MyData CA HTTP service (FastAPI)."""
