"""Cache, connection pool and compression services with graceful degradation."""
