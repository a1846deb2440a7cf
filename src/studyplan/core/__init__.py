"""Agent loop, cost accounting and the ambient runtime (logging, telemetry)."""
