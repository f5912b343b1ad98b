"""HTTP API support: request dependencies."""
