"""
Kestrel Tracker Engine

Wires the price table, portfolio ledger, alert monitor and watchlist
together and owns the two periodic tasks: price polling and alert
evaluation.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from config.settings import Settings, get_settings
from core.alerts import AlertMonitor
from core.errors import FetchError
from core.portfolio import PortfolioLedger
from core.scheduler import Clock, RecurringTask, SystemClock
from core.watchlist import Watchlist
from data.feeder import CoinGeckoFeeder, MarketDataSource
from data.price_table import PriceTable
from utils.logger import core_logger as logger
from utils.redis_store import PersistenceStore, create_store
from utils.slack import MessageType, NotificationSink, create_notifier


class EngineState(str, Enum):
    """Tracker engine states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class EngineStats:
    """Tracker engine statistics."""
    state: str
    uptime: timedelta
    refresh_successes: int
    refresh_failures: int
    last_refresh: Optional[datetime]
    last_refresh_error: Optional[str]
    instrument_count: int
    alert_passes: int
    alerts_fired: int
    armed_alerts: int
    trades_executed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "uptime": str(self.uptime),
            "refresh_successes": self.refresh_successes,
            "refresh_failures": self.refresh_failures,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "last_refresh_error": self.last_refresh_error,
            "instrument_count": self.instrument_count,
            "alert_passes": self.alert_passes,
            "alerts_fired": self.alerts_fired,
            "armed_alerts": self.armed_alerts,
            "trades_executed": self.trades_executed,
        }


class TrackerEngine:
    """
    Owner of every Kestrel component.

    Collaborators can be injected for tests; anything left out is built
    from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[PersistenceStore] = None,
        notifier: Optional[NotificationSink] = None,
        source: Optional[MarketDataSource] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.store = store or create_store(self.settings)
        self.notifier = notifier or create_notifier(self.settings)
        self.source = source or CoinGeckoFeeder(self.settings)

        self.state = EngineState.STOPPED
        self.start_time: Optional[datetime] = None

        self.price_table = PriceTable(self.source, timeout=self.settings.refresh_timeout, clock=self.clock)
        self.ledger = PortfolioLedger(self.price_table, self.store, notifier=self.notifier, clock=self.clock, settings=self.settings)
        self.alerts = AlertMonitor(self.price_table, self.store, notifier=self.notifier, clock=self.clock, settings=self.settings)
        self.watchlist = Watchlist(self.price_table, self.store, settings=self.settings)

        self._poller = RecurringTask(
            "price-poll",
            self.settings.price_poll_interval,
            self.poll_prices,
            clock=self.clock,
            run_immediately=False,
        )
        self._alert_checker = RecurringTask(
            "alert-check",
            self.settings.alert_check_interval,
            self.alerts.evaluate,
            clock=self.clock,
            run_immediately=False,
        )

        logger.info(f"Tracker engine initialized ({self.settings.environment.value})")

    def is_running(self) -> bool:
        return self.state == EngineState.RUNNING

    async def load(self) -> None:
        """Restore ledger, alert rules and watchlist from the store."""
        await self.ledger.load()
        await self.alerts.load()
        await self.watchlist.load()

    async def poll_prices(self) -> bool:
        """
        Refresh the price table once.

        Returns:
            bool: False if the fetch failed; the previous table stays in use
        """
        try:
            await self.price_table.refresh()
        except FetchError as e:
            logger.warning(f"Price poll failed: {e}")
            return False
        return True

    async def start(self) -> None:
        """
        Load state, take a first price snapshot and start the periodic tasks.
        """
        if self.state != EngineState.STOPPED:
            logger.warning(f"Cannot start engine in state: {self.state}")
            return

        self.state = EngineState.STARTING
        self.start_time = self.clock.now()

        try:
            await self.load()

            if await self.poll_prices():
                await self.alerts.evaluate()

            self._poller.start()
            self._alert_checker.start()

            self.state = EngineState.RUNNING
            logger.system(
                f"Tracker engine started: polling every {self.settings.price_poll_interval}s, "
                f"checking alerts every {self.settings.alert_check_interval}s"
            )
            self.notifier.notify(
                "Kestrel started",
                f"Tracking {len(self.price_table)} instruments with {len(self.alerts.armed_rules())} armed alerts",
                MessageType.SYSTEM,
            )

        except Exception as e:
            self.state = EngineState.ERROR
            logger.system(f"Failed to start tracker engine: {e}", level="ERROR")
            await self._poller.stop()
            await self._alert_checker.stop()
            raise

    async def stop(self) -> None:
        """Stop the periodic tasks and flush unsaved state."""
        if self.state == EngineState.STOPPED:
            logger.warning("Engine already stopped")
            return

        self.state = EngineState.STOPPING
        logger.info("Stopping tracker engine...")

        await self._poller.stop()
        await self._alert_checker.stop()

        # Last chance to write state whose previous save failed
        if self.ledger.unsaved_changes:
            await self.ledger.save()
        if self.alerts.unsaved_changes:
            await self.alerts.save()
        if self.watchlist.unsaved_changes:
            await self.watchlist.save()

        self.state = EngineState.STOPPED
        logger.system(f"Tracker engine stopped after {self.get_stats().uptime}")

    async def close(self) -> None:
        """Flush notifications and release network and storage resources."""
        await self.notifier.flush()
        await self.source.close()
        await self.store.close()

    def get_stats(self) -> EngineStats:
        """
        Get current engine statistics.

        Returns:
            EngineStats: Current statistics
        """
        uptime = timedelta()
        if self.start_time is not None:
            uptime = self.clock.now() - self.start_time

        return EngineStats(
            state=self.state.value,
            uptime=uptime,
            refresh_successes=self.price_table.refresh_count,
            refresh_failures=self.price_table.failure_count,
            last_refresh=self.price_table.last_updated,
            last_refresh_error=self.price_table.last_error,
            instrument_count=len(self.price_table),
            alert_passes=self.alerts.pass_count,
            alerts_fired=self.alerts.fired_count,
            armed_alerts=len(self.alerts.armed_rules()),
            trades_executed=self.ledger.trade_count,
        )
