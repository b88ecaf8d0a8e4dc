import logging
import platform
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import psutil

from app.core.redis import check_redis_connection
from app.database import check_db_connection
from app.runtime import IngestionRuntime

logger = logging.getLogger(__name__)


def _probe(check: Callable[[], bool], **details) -> Dict[str, Any]:
    try:
        healthy = bool(check())
    except Exception as e:
        logger.error(f"Health probe failed: {e}")
        return {"healthy": False, "error": str(e), **details}
    return {"healthy": healthy, "status": "connected" if healthy else "disconnected", **details}


def _host_metrics() -> Dict[str, Any]:
    try:
        return {
            "cpu_percent": psutil.cpu_percent(interval=0.1),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage("/").percent,
            "python_version": platform.python_version(),
            "uptime_seconds": datetime.now(timezone.utc).timestamp() - psutil.boot_time(),
        }
    except (psutil.Error, OSError) as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {}


def get_detailed_health(runtime: IngestionRuntime) -> Dict[str, Any]:
    """Store, cache, broker, outbox backlog and worker pool of one runtime."""
    services = {
        "database": _probe(
            lambda: check_db_connection(runtime.session_factory),
            dialect=runtime.engine.dialect.name,
        ),
        "redis": _probe(check_redis_connection),
        "broker": _probe(
            runtime.broker.check_connection,
            transport=type(runtime.broker).__name__,
            consumer_running=runtime.consumer_loop.running,
        ),
    }

    outbox: Dict[str, Any] = {}
    if services["database"]["healthy"]:
        try:
            outbox = runtime.outbox.count_by_status()
        except Exception as e:
            logger.error(f"Failed to count outbox entries: {e}")
            outbox = {"error": str(e)}

    return {
        "services": services,
        "outbox": outbox,
        "worker": {
            "queue_depth": runtime.worker_queue.depth,
            "queue_capacity": runtime.worker_queue.queue_capacity,
            "pool_size": runtime.worker_queue.pool_size,
            "scheduler_running": runtime.scheduler.scheduler.running,
        },
        "system": _host_metrics(),
        "instance_id": runtime.config.INSTANCE_ID,
        "overall_health": "healthy" if all(s["healthy"] for s in services.values()) else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
