"""HTTP API routers for the Kai matching engine, mounted under /api/v1."""
