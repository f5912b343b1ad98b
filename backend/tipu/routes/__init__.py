"""Route modules; application routes are mounted under /api/v1."""
