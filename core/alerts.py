"""
Kestrel Alert Monitor

Persisted "price above X" / "price below X" rules evaluated against the
price table. A rule fires exactly once, the first time an evaluation pass
sees its condition hold, and then stays triggered until the user deletes it.
"""

import asyncio
import json
from decimal import Decimal
from typing import List, Optional, Union

from config.settings import Settings, get_settings
from core.errors import (
    InstrumentUnknownError,
    InvalidThresholdError,
    PersistenceError,
    RuleNotFoundError,
)
from core.models import (
    STATE_VERSION,
    AlertDirection,
    AlertRule,
    FiredRule,
    format_usd,
    to_decimal,
)
from core.scheduler import Clock, SystemClock
from data.price_table import PriceTable
from utils.logger import alert_logger as logger, log_alert
from utils.redis_store import PersistenceStore
from utils.slack import MessageType, NotificationSink


class AlertMonitor:
    """
    Owner of the alert rule set.

    Rule changes (create, delete, fire) go through one asyncio lock and the
    whole rule list is written to the store as a single document.
    """

    def __init__(
        self,
        price_table: PriceTable,
        store: PersistenceStore,
        notifier: Optional[NotificationSink] = None,
        rules_key: Optional[str] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.price_table = price_table
        self.store = store
        self.notifier = notifier
        self.rules_key = rules_key or self.settings.alert_rules_key
        self.clock = clock or SystemClock()

        self._rules: List[AlertRule] = []
        self._lock = asyncio.Lock()
        self.unsaved_changes = False
        self.pass_count = 0
        self.fired_count = 0

    @property
    def rules(self) -> List[AlertRule]:
        """Copies of every rule, oldest first."""
        return [rule.snapshot() for rule in self._rules]

    def armed_rules(self) -> List[AlertRule]:
        return [rule.snapshot() for rule in self._rules if not rule.triggered]

    def get(self, rule_id: str) -> Optional[AlertRule]:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule.snapshot()
        return None

    def _notify(self, title: str, message: str, message_type: MessageType = MessageType.ALERT) -> None:
        if self.notifier is not None:
            self.notifier.notify(title, message, message_type)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> List[AlertRule]:
        """Restore rules from the store; missing or corrupt data yields no rules."""
        async with self._lock:
            self._rules = await self._read_rules()
            self.unsaved_changes = False
            armed = sum(1 for rule in self._rules if not rule.triggered)
            logger.info(f"Loaded {len(self._rules)} alert rules ({armed} armed)")
            return self.rules

    async def _read_rules(self) -> List[AlertRule]:
        try:
            raw = await self.store.get(self.rules_key)
        except PersistenceError as e:
            logger.error(f"Could not read alert rules, starting empty: {e}")
            return []

        if raw is None:
            return []

        try:
            document = json.loads(raw.decode("utf-8"))
            if document.get("version") != STATE_VERSION:
                raise ValueError(f"Unsupported alert rules version: {document.get('version')}")
            rules = [AlertRule.from_dict(item) for item in document["rules"]]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Saved alert rules are corrupt, starting empty: {e}")
            return []

        return rules

    async def save(self) -> bool:
        """
        Write the full rule set as one document.

        Returns:
            bool: True if written; on failure the in-memory rules are kept
                and the next successful save catches up
        """
        document = {
            "version": STATE_VERSION,
            "rules": [rule.to_dict() for rule in self._rules],
        }
        try:
            await self.store.set(self.rules_key, json.dumps(document).encode("utf-8"))
        except PersistenceError as e:
            self.unsaved_changes = True
            logger.storage(f"Alert rules save failed, will retry on next change: {e}", key=self.rules_key, level="ERROR")
            return False

        self.unsaved_changes = False
        logger.storage(f"Saved {len(self._rules)} alert rules", key=self.rules_key)
        return True

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    def _next_rule_id(self) -> str:
        """Millisecond creation timestamp, bumped past the newest existing id."""
        candidate = int(self.clock.now().timestamp() * 1000)
        numeric_ids = [int(rule.id) for rule in self._rules if rule.id.isdigit()]
        if numeric_ids and candidate <= max(numeric_ids):
            candidate = max(numeric_ids) + 1
        return str(candidate)

    async def create_rule(
        self,
        instrument_id: str,
        target_price: Union[Decimal, str, int, float],
        direction: Union[AlertDirection, str],
    ) -> AlertRule:
        """
        Add an armed rule for an instrument currently in the price table.

        Raises:
            InstrumentUnknownError: instrument not in the price table
            InvalidThresholdError: target price missing, malformed or not > 0
        """
        instrument = self.price_table.get(instrument_id)
        if instrument is None:
            raise InstrumentUnknownError(instrument_id)

        try:
            target = to_decimal(target_price)
        except ValueError:
            raise InvalidThresholdError(target_price) from None
        if target <= 0:
            raise InvalidThresholdError(target_price)

        if not isinstance(direction, AlertDirection):
            try:
                direction = AlertDirection.parse(direction)
            except ValueError:
                raise InvalidThresholdError(target, f"Unknown alert direction: {direction}") from None

        async with self._lock:
            rule = AlertRule(
                id=self._next_rule_id(),
                instrument_id=instrument.id,
                target_price=target,
                direction=direction,
                created_at=self.clock.now(),
                coin_name=instrument.name,
                coin_symbol=instrument.symbol.upper(),
            )
            self._rules.append(rule)
            await self.save()

        logger.alert(f"Created rule {rule.describe()}", rule_id=rule.id, instrument=rule.instrument_id)
        self._notify(
            "Alert Created",
            f"Price alert set for {rule.coin_name} ({rule.coin_symbol})",
            MessageType.INFO,
        )
        return rule.snapshot()

    async def delete_rule(self, rule_id: str) -> AlertRule:
        """
        Remove a rule, armed or fired.

        Raises:
            RuleNotFoundError: no rule has this id
        """
        async with self._lock:
            for index, rule in enumerate(self._rules):
                if rule.id == rule_id:
                    break
            else:
                raise RuleNotFoundError(rule_id)

            removed = self._rules.pop(index)
            await self.save()

        logger.alert(f"Removed rule {removed.describe()}", rule_id=removed.id)
        self._notify("Alert Removed", "Price alert was successfully removed", MessageType.INFO)
        return removed

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self) -> List[FiredRule]:
        """
        Check every armed rule against the current price table.

        Rules whose instrument is missing from the table are skipped for this
        pass. Fired rules are marked triggered and the rule set is saved once
        at the end of the pass.

        Returns:
            List[FiredRule]: rules that fired during this pass
        """
        async with self._lock:
            snapshot = self.price_table.snapshot
            fired_at = self.clock.now()
            fired: List[FiredRule] = []

            for rule in self._rules:
                if rule.triggered:
                    continue

                price = snapshot.price_of(rule.instrument_id)
                if price is None:
                    continue

                if rule.is_satisfied_by(price):
                    rule.triggered = True
                    fired.append(FiredRule(rule=rule.snapshot(), price=price, fired_at=fired_at))

            self.pass_count += 1
            if fired:
                self.fired_count += len(fired)
                await self.save()

        for event in fired:
            rule = event.rule
            log_alert(
                rule_id=rule.id,
                instrument=rule.instrument_id,
                direction=rule.direction.value,
                target_price=rule.target_price,
                price=event.price,
            )
            self._notify(
                "Price Alert Triggered",
                f"{rule.coin_name} ({rule.coin_symbol}) is now {format_usd(event.price)}",
            )

        if fired:
            logger.info(f"Alert pass {self.pass_count}: {len(fired)} fired")
        return fired
