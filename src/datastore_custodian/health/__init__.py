"""Health monitor: read-only readiness probe of the observed store."""

from datastore_custodian.health.monitor import HealthMonitor, HealthStatus

__all__ = ["HealthMonitor", "HealthStatus"]
