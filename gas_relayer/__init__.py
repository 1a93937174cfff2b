"""Gas relayer service: metrics, health endpoints and lifecycle."""
