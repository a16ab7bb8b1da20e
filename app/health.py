"""
Health check endpoints for liveness and readiness probes.
"""
from datetime import datetime, timezone
from typing import Dict, Any
import time
import psutil
from .config import get_settings
from .logging import get_logger
from .storage.base import EventStore

logger = get_logger()


class HealthChecker:
    """
    Health checker for the ingestor service.

    Provides:
    - Liveness checks (is the service running?)
    - Readiness checks (can the service accept events?)
    """

    def __init__(self, store: EventStore, service_name: str = "ingestor", version: str = "0.1.0"):
        self.store = store
        self.service_name = service_name
        self.version = version
        self.settings = get_settings()

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def liveness(self) -> Dict[str, Any]:
        """
        Liveness check - basic health check.

        Returns:
            dict: Health status with service info and timestamp
        """
        return {
            "status": "ok",
            "service": self.service_name,
            "version": self.version,
            "timestamp": self._now(),
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness check - comprehensive health check.

        Checks:
        - Storage engine reachability
        - Disk space availability
        - Memory availability

        Returns:
            dict: Readiness status with detailed check results
        """
        checks = {
            "storage": await self._check_storage(),
            "disk_space": self._check_disk_space(),
            "memory": self._check_memory(),
        }
        ready = all(check["status"] != "error" for check in checks.values())

        return {
            "status": "ready" if ready else "not_ready",
            "service": self.service_name,
            "version": self.version,
            "timestamp": self._now(),
            "checks": checks,
        }

    async def _check_storage(self) -> Dict[str, Any]:
        start = time.time()
        healthy = await self.store.health_check()
        latency_ms = round((time.time() - start) * 1000, 2)
        if not healthy:
            return {
                "status": "error",
                "backend": self.settings.STORE_BACKEND,
                "error": "storage engine unreachable",
            }
        return {
            "status": "ok",
            "backend": self.settings.STORE_BACKEND,
            "latency_ms": latency_ms,
        }

    def _check_disk_space(self, threshold_gb: float = 1.0) -> Dict[str, Any]:
        """
        Check available disk space.

        Args:
            threshold_gb: Minimum available disk space in GB (default: 1.0)

        Returns:
            dict: Disk space health check result
        """
        try:
            disk = psutil.disk_usage("/")
            available_gb = disk.free / (1024**3)

            if available_gb < threshold_gb:
                status = "error"
            elif available_gb < threshold_gb * 2:
                status = "warning"
            else:
                status = "ok"

            return {
                "status": status,
                "available_gb": round(available_gb, 2),
                "total_gb": round(disk.total / (1024**3), 2),
                "used_percent": disk.percent,
            }

        except Exception as e:
            logger.warning("disk_health_check_failed", error=str(e))
            return {
                "status": "error",
                "error": str(e),
            }

    def _check_memory(self, threshold_mb: float = 50.0) -> Dict[str, Any]:
        """
        Check available memory.

        Args:
            threshold_mb: Minimum available memory in MB (default: 50.0)

        Returns:
            dict: Memory health check result
        """
        try:
            memory = psutil.virtual_memory()
            available_mb = memory.available / (1024**2)

            if available_mb < threshold_mb:
                status = "error"
            elif available_mb < threshold_mb * 2:
                status = "warning"
            else:
                status = "ok"

            return {
                "status": status,
                "available_mb": round(available_mb, 2),
                "total_mb": round(memory.total / (1024**2), 2),
                "used_percent": memory.percent,
            }

        except Exception as e:
            logger.warning("memory_health_check_failed", error=str(e))
            return {
                "status": "error",
                "error": str(e),
            }
