"""
Payment Monitor - Stuck Session Reconciliation
==============================================
Background task that finds mobile-money sessions stuck in pending or
processing and asks the gateway what actually happened.

A buyer who approved the USSD prompt while our webhook endpoint was down
would otherwise never get an order.

Features:
- Runs every 2 minutes
- Picks up sessions older than 2 minutes
- completed at gateway -> same path as a successful webhook
- failed/cancelled at gateway -> session closed
- still unconfirmed after 30 minutes -> session expired
- Manual single-cycle run and stats for the admin dashboard
"""

import asyncio
import os
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from payments.gateway import PaymentGateway
from schemas.commerce import utcnow

logger = structlog.get_logger().bind(component="payment_monitor")


# =============================================================================
# CONFIGURATION
# =============================================================================

class PaymentMonitorConfig:
    """Payment monitor configuration"""

    # How often to look for stuck sessions (seconds)
    CHECK_INTERVAL = int(os.getenv("PAYMENT_MONITOR_INTERVAL", "120"))

    # Age before a pending/processing session is polled (seconds)
    STUCK_THRESHOLD = int(os.getenv("PAYMENT_MONITOR_THRESHOLD", "120"))

    # Age after which an unconfirmed session is expired (seconds)
    EXPIRE_AFTER = int(os.getenv("PAYMENT_MONITOR_EXPIRE_AFTER", "1800"))

    # Maximum sessions to poll per cycle
    MAX_SESSIONS_PER_CYCLE = int(os.getenv("PAYMENT_MONITOR_BATCH_SIZE", "20"))

    ENABLED = os.getenv("PAYMENT_MONITOR_ENABLED", "true").lower() == "true"


config = PaymentMonitorConfig()


# =============================================================================
# MONITOR
# =============================================================================

class PaymentMonitor:
    """
    Polls the gateway for stuck sessions.

    Example:
        monitor = PaymentMonitor(gateway)
        task = asyncio.create_task(monitor.run_forever())
        ...
        monitor.stop()
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        interval: Optional[int] = None,
        stuck_threshold: Optional[int] = None,
        expire_after: Optional[int] = None,
        batch_size: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        self.gateway = gateway
        self.interval = config.CHECK_INTERVAL if interval is None else interval
        self.stuck_threshold = config.STUCK_THRESHOLD if stuck_threshold is None else stuck_threshold
        self.expire_after = config.EXPIRE_AFTER if expire_after is None else expire_after
        self.batch_size = config.MAX_SESSIONS_PER_CYCLE if batch_size is None else batch_size
        self.enabled = config.ENABLED if enabled is None else enabled

        self._stop = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self.stats: Dict[str, Any] = {
            "cycles": 0,
            "checked": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "expired": 0,
            "pending": 0,
            "errors": 0,
            "last_run_at": None,
            "last_error": None,
        }

    async def run_cycle(self) -> Dict[str, int]:
        """Reconcile one batch of stuck sessions; returns per-outcome counts"""
        async with self._cycle_lock:
            cutoff = utcnow() - timedelta(seconds=self.stuck_threshold)
            sessions = await self.gateway.store.list_stuck_sessions(cutoff, limit=self.batch_size)

            outcomes: Dict[str, int] = {}
            for session in sessions:
                try:
                    outcome = await self.gateway.reconcile_session(session, self.expire_after)
                except Exception as e:
                    logger.error(
                        "session_reconcile_failed",
                        session_id=session["id"],
                        error=str(e),
                    )
                    self.stats["last_error"] = str(e)
                    outcome = "error"
                outcomes[outcome] = outcomes.get(outcome, 0) + 1

            self.stats["cycles"] += 1
            self.stats["checked"] += len(sessions)
            self.stats["last_run_at"] = utcnow().isoformat()
            for outcome, count in outcomes.items():
                key = "errors" if outcome == "error" else outcome
                self.stats[key] = self.stats.get(key, 0) + count

            if sessions:
                logger.info("payment_monitor_cycle_complete", checked=len(sessions), **outcomes)
            return {"checked": len(sessions), **outcomes}

    async def run_forever(self):
        logger.info(
            "payment_monitor_started",
            interval=self.interval,
            threshold=self.stuck_threshold,
            enabled=self.enabled,
        )
        if not self.enabled:
            logger.info("payment_monitor_disabled")
            return

        while not self._stop.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                self.stats["last_error"] = str(e)
                logger.error("payment_monitor_error", error=str(e))

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("payment_monitor_stopped")

    def stop(self):
        self._stop.set()

    async def get_stats(self) -> Dict[str, Any]:
        """Counters since start-up plus the current stuck backlog"""
        cutoff = utcnow() - timedelta(seconds=self.stuck_threshold)
        try:
            stuck = await self.gateway.store.list_stuck_sessions(cutoff, limit=500)
            backlog: Any = len(stuck)
        except Exception as e:
            logger.warning("payment_monitor_stats_failed", error=str(e))
            backlog = None

        return {
            "enabled": self.enabled,
            "interval_seconds": self.interval,
            "threshold_seconds": self.stuck_threshold,
            "expire_after_seconds": self.expire_after,
            "currently_stuck": backlog,
            **self.stats,
        }
