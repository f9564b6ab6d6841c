import os
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from dotenv import load_dotenv

from client.redis import Client as RedisClient
from client.contentStore import InMemoryContentStore
from monitoring.healthMonitor import AlertThresholds, HealthMonitor, run_alert_loop
from ranking import config as defaults
from ranking.cacheManager import invalidate_user_feed
from ranking.feedOrchestrator import FeedUnavailableError, build_orchestrator
from shared.config import get_config

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def build_content_store():
    """Build the BigQuery content store from environment, or an empty in-memory one"""
    credentials = os.getenv('BIGQUERY_CREDENTIALS_JSON')
    project_id = os.getenv('BIGQUERY_PROJECT_ID')

    if not credentials or not project_id:
        logger.warning("BigQuery not configured, serving from an empty in-memory content store")
        return InMemoryContentStore()

    from client.bigQuery import Client as BigQueryClient

    return BigQueryClient(
        json.loads(credentials),
        project_id,
        dataset_id=os.getenv('BIGQUERY_DATASET_ID', 'data')
    )


class FeedServer:
    def __init__(self, content_store=None, cache=None, monitor: Optional[HealthMonitor] = None, config=None):
        """
        Initialize feed server

        Args:
            content_store: ContentStore implementation (from environment when omitted)
            cache: Cache store client (from environment when omitted)
            monitor: Health monitor (built from config when omitted)
            config: shared.config.Config (global config when omitted)
        """
        self.config = config or get_config()

        if cache is None:
            cache_config = self.config.get_cache_config()
            cache = RedisClient(
                operation_timeout=cache_config.get('operation_timeout_seconds', defaults.CACHE_OPERATION_TIMEOUT_SECONDS),
                socket_timeout=cache_config.get('socket_timeout_seconds', defaults.CACHE_SOCKET_TIMEOUT_SECONDS)
            )
        self.cache = cache
        self.content_store = content_store if content_store is not None else build_content_store()

        if monitor is None:
            monitor = HealthMonitor(
                sample_capacity=self.config.get('monitoring.sample_capacity', defaults.SAMPLE_CAPACITY),
                thresholds=AlertThresholds.from_config(self.config.get_alert_thresholds())
            )
        self.monitor = monitor

        self.orchestrator = build_orchestrator(self.content_store, self.cache, self.monitor, self.config)
        self.default_limit = self.config.get('server.default_limit', defaults.DEFAULT_LIMIT)
        self.max_limit = self.config.get('server.max_limit', defaults.MAX_LIMIT)
        self.alert_interval = self.config.get('monitoring.alert_interval_seconds', defaults.ALERT_INTERVAL_SECONDS)

        self.app = FastAPI(lifespan=self.lifespan)
        self.setup_routes()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        """Run the alert loop for the lifetime of the app"""
        stop_event = asyncio.Event()
        alert_task = asyncio.create_task(run_alert_loop(self.monitor, self.alert_interval, stop_event))

        try:
            yield
        finally:
            stop_event.set()
            await alert_task
            await self.cache.close()

            close = getattr(self.content_store, 'close', None)
            if close is not None:
                close()

    def clamp_paging(self, page: int, limit: Optional[int]):
        """Keep page >= 1 and 1 <= limit <= max_limit"""
        page = max(page or 1, 1)
        limit = self.default_limit if limit is None else limit
        limit = min(max(limit, 1), self.max_limit)
        return page, limit

    def setup_routes(self):
        """Setup FastAPI routes"""

        @self.app.get("/")
        async def root():
            return {"status": "healthy", "service": "feed-ranking"}

        @self.app.get("/feed")
        async def get_feed(user_id: str, page: int = 1, limit: Optional[int] = None):
            page, limit = self.clamp_paging(page, limit)

            try:
                result = await self.orchestrator.get_feed(user_id, page, limit)
            except FeedUnavailableError as e:
                logger.error(f"Feed unavailable for user {user_id}: {e.__cause__}")
                return JSONResponse(
                    status_code=503,
                    content={"error": "Feed temporarily unavailable", "retryable": True},
                    headers={"Retry-After": "30"}
                )
            except Exception as e:
                logger.error(f"Error serving feed for user {user_id}: {e}")
                return JSONResponse(status_code=500, content={"error": "Internal server error", "retryable": True})

            logger.info(f"Served {len(result.items)} posts to user {user_id} ({result.tier_used.value})")
            return {
                "feed": list(result.items),
                "metadata": {
                    "page": page,
                    "limit": limit,
                    "count": len(result.items),
                    "algorithm": result.tier_used.value
                }
            }

        @self.app.get("/metrics")
        async def get_metrics():
            metrics = self.monitor.get_metrics()
            return {
                "metrics": metrics.to_dict(),
                "alerts": self.monitor.check_thresholds_and_alert(),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.get("/metrics/export")
        async def export_metrics():
            return PlainTextResponse(self.monitor.export_metrics(), media_type="application/json")

        @self.app.post("/metrics/reset")
        async def reset_metrics():
            self.monitor.reset()
            return {"status": "reset"}

        @self.app.get("/health")
        async def health_check():
            cache_available = self.cache.is_available()
            breaker = self.orchestrator.breaker.snapshot()
            guard = self.orchestrator.stampede_guard

            status = "healthy"
            if not cache_available or breaker['state'] != 'closed':
                status = "degraded"

            return {
                "status": status,
                "cache_available": cache_available,
                "circuit_breaker": breaker,
                "stampede": guard.get_stats() if guard is not None else {},
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.post("/cache/invalidate/{user_id}")
        async def invalidate_cache(user_id: str):
            invalidated = await invalidate_user_feed(self.cache, user_id)
            return {"user_id": user_id, "invalidated": invalidated}


def create_app() -> FastAPI:
    return FeedServer().app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    port = int(os.getenv('PORT', 8080))
    host = os.getenv('HOST', '0.0.0.0')

    logger.info(f"Starting feed server on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port)
