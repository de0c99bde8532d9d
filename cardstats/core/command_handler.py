"""Command Handler: the request/response control surface.

Receives JSON-like requests ({'action': ..., **params}) from the CLI entry
point (main.py) and delegates the work to the cache, the scheduler, and the
rate limiter. Every response carries a 'success' flag and, on failure, an
'error' message. No exception escapes handle().
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List

from cardstats.core.services.acquisition_scheduler import AcquisitionScheduler
from cardstats.domain.errors import RateLimitExceededError
from cardstats.domain.interfaces.storage import KeyValueStorage
from cardstats.domain.models.common import ActionName, CommandRequest, CommandResponse, StorageKey
from cardstats.domain.models.counts import ItemState
from cardstats.infrastructure.cache.caching_service import CountCache
from cardstats.infrastructure.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ENABLED_KEY = StorageKey("cardstats_enabled")
RATE_LIMIT_KEY = StorageKey("cardstats_rate_limit")
DAY = 24 * 60 * 60

ActionHandler = Callable[[CommandRequest], Awaitable[CommandResponse]]

class CommandHandler:
    """Dispatches control actions to the application services."""

    def __init__(
        self,
        cache: CountCache,
        scheduler: AcquisitionScheduler,
        rate_limiter: RateLimiter,
        storage: KeyValueStorage,
    ):
        """Initializes the CommandHandler with required services."""
        self.cache = cache
        self.scheduler = scheduler
        self.rate_limiter = rate_limiter
        self.storage = storage
        self.enabled = True
        self._actions: Dict[ActionName, ActionHandler] = {
            ActionName("get-stats"): self.handle_get_stats,
            ActionName("set-enabled"): self.handle_set_enabled,
            ActionName("refresh-all"): self.handle_refresh_all,
            ActionName("export-cache"): self.handle_export_cache,
            ActionName("import-cache"): self.handle_import_cache,
            ActionName("prune-errors"): self.handle_prune_errors,
            ActionName("prune-by-age"): self.handle_prune_by_age,
            ActionName("priority-update"): self.handle_priority_update,
            ActionName("clear-cache"): self.handle_clear_cache,
            ActionName("clear-rate-limit"): self.handle_clear_rate_limit,
        }

    @property
    def actions(self) -> List[str]:
        return sorted(self._actions)

    # --- Lifecycle ---

    async def startup(self) -> None:
        """Restores cache entries, the rate-limit window, and the enabled flag."""
        loaded = await self.cache.load()
        restored = self.rate_limiter.restore(await self.storage.get(RATE_LIMIT_KEY, []) or [])
        stored_flag = await self.storage.get(ENABLED_KEY)
        self.enabled = stored_flag if isinstance(stored_flag, bool) else True
        logger.info(
            f"Startup complete: {loaded} cache entries, {restored} recent requests, enabled={self.enabled}"
        )

    async def shutdown(self) -> None:
        """Flushes pending cache writes and saves the rate-limit window."""
        await self.cache.flush()
        await self.storage.set(RATE_LIMIT_KEY, self.rate_limiter.snapshot())
        logger.info("Shutdown complete; cache and rate-limit window saved")

    # --- Dispatch ---

    async def handle(self, request: Any) -> CommandResponse:
        if not isinstance(request, dict):
            return {"success": False, "error": "Request must be a JSON object"}

        action = request.get("action")
        handler = self._actions.get(action)
        if handler is None:
            logger.warning(f"Unknown action requested: {action}")
            return {"success": False, "error": f"Unknown action: {action}"}

        logger.info(f"Handling '{action}' request")
        try:
            response = await handler(request)
        except RateLimitExceededError as e:
            logger.warning(f"'{action}' denied by local rate limit: {e}")
            return {"success": False, "error": str(e), "reset_in_seconds": e.reset_in_seconds}
        except Exception as e:
            logger.error(f"'{action}' failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}
        response.setdefault("success", True)
        return response

    # --- Actions ---

    async def handle_get_stats(self, request: CommandRequest) -> CommandResponse:
        return {
            "enabled": self.enabled,
            "cache": self.cache.stats(),
            "rate_limit": self.rate_limiter.stats(),
            "pending": self.scheduler.pending_count,
            "memory": self.cache.memory_estimate(),
        }

    async def handle_set_enabled(self, request: CommandRequest) -> CommandResponse:
        enabled = request.get("enabled")
        if not isinstance(enabled, bool):
            raise ValueError("'enabled' must be true or false")
        if self.enabled and not enabled:
            self.scheduler.cancel_current_batch()
        self.enabled = enabled
        await self.storage.set(ENABLED_KEY, enabled)
        logger.info(f"Processing {'enabled' if enabled else 'disabled'}")
        return {"enabled": enabled}

    async def handle_refresh_all(self, request: CommandRequest) -> CommandResponse:
        if not self.enabled:
            logger.info("Refresh skipped: processing is disabled")
            return {"enabled": False}
        item_ids = _require_id_list(request.get("ids", []))
        report = await self.scheduler.process_all(item_ids)
        return {
            "enabled": True,
            "report": report.to_dict(),
            "items": [view.to_dict() for view in report.views],
        }

    async def handle_export_cache(self, request: CommandRequest) -> CommandResponse:
        data = self.cache.export_entries()
        return {"data": data, "count": len(data)}

    async def handle_import_cache(self, request: CommandRequest) -> CommandResponse:
        data = request.get("data")
        if not isinstance(data, dict):
            raise ValueError("'data' must be an object mapping item ids to entries")
        imported = await self.cache.import_entries(data)
        return {"imported": imported, "received": len(data)}

    async def handle_prune_errors(self, request: CommandRequest) -> CommandResponse:
        return {"removed": await self.cache.prune_errors()}

    async def handle_prune_by_age(self, request: CommandRequest) -> CommandResponse:
        max_age_days = request.get("max_age_days")
        if isinstance(max_age_days, bool) or not isinstance(max_age_days, (int, float)) or max_age_days < 0:
            raise ValueError("'max_age_days' must be a non-negative number")
        return {"removed": await self.cache.prune_by_age(max_age_days * DAY)}

    async def handle_priority_update(self, request: CommandRequest) -> CommandResponse:
        item_id = request.get("item_id")
        if not isinstance(item_id, str) or not item_id.strip():
            raise ValueError("'item_id' must be a non-empty string")
        result = await self.scheduler.priority_update(item_id.strip())
        response: CommandResponse = {
            "state": result.state.value,
            "item": result.view.to_dict() if result.view else None,
        }
        if result.state is not ItemState.COMMITTED:
            response["success"] = False
            response["error"] = result.error or f"Update ended in state {result.state.value}"
        return response

    async def handle_clear_cache(self, request: CommandRequest) -> CommandResponse:
        await self.cache.clear()
        return {}

    async def handle_clear_rate_limit(self, request: CommandRequest) -> CommandResponse:
        self.rate_limiter.force_reset()
        await self.storage.set(RATE_LIMIT_KEY, [])
        return {"rate_limit": self.rate_limiter.stats()}

def _require_id_list(raw: Any) -> List[str]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValueError("'ids' must be a list of strings")
    return [item.strip() for item in raw if item.strip()]

