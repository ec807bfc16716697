"""
Rule engine for the WeddingBell notification service.

Routing rules adjust a notification before its channels are determined. For
each active rule registered for the notification's type, the engine checks
the rule's conditions against the current time, the primary recipient's
preferences and the delivery log, then applies the rule's actions in order.

Key Features:
- Conditions: ``time`` window, ``user_preference`` match, ``frequency`` cap
- Actions: SET_PRIORITY, ADD_CHANNEL, REMOVE_CHANNEL, DELAY, AGGREGATE,
  TRANSFORM (named transformers registered at startup)
- Rules apply cumulatively in list order; later actions win
- A condition that cannot be evaluated fails closed (the rule is skipped)
- A reached frequency cap suppresses the notification
- Quiet hours delay non-critical notifications until the window ends
- The input notification is never mutated
"""

from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from weddingbell.app.core.exceptions import (
    BaseCustomException,
    ErrorCode,
    RuleEvaluationError,
)
from weddingbell.app.core.pubsub import PubSubBus
from weddingbell.app.models.domain.notification import (
    ALL_CHANNELS,
    Notification,
    NotificationStatus,
    Priority,
    parse_datetime,
    priority_for_type,
    utc_now,
)
from weddingbell.app.models.domain.rule import RoutingRule, RuleActionType, RuleConditionType
from weddingbell.app.repositories.interfaces import DeliveryLogRepository, RuleRepository
from weddingbell.app.services.preference_store import PreferenceStore
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import PolicySettings

logger = get_logger(__name__)

RULES_CHANNEL = "rules"

Transformer = Callable[[Notification], Notification]


class RuleEngine:
    """
    Evaluates routing rules against notifications.

    Usage:
        engine = RuleEngine(preference_store, delivery_log)
        engine.register_transformer("shorten", shorten_title)
        routed = await engine.apply_rules(notification)
    """

    def __init__(
        self,
        preference_store: PreferenceStore,
        delivery_log: DeliveryLogRepository,
        repository: Optional[RuleRepository] = None,
        bus: Optional[PubSubBus] = None,
        policy: Optional[PolicySettings] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.preference_store = preference_store
        self.delivery_log = delivery_log
        self.repository = repository
        self.bus = bus
        self.policy = policy or PolicySettings()
        self.clock = clock

        self._rules: List[RoutingRule] = []
        self._transformers: Dict[str, Transformer] = {}

    @property
    def rules(self) -> List[RoutingRule]:
        return list(self._rules)

    async def start(self) -> None:
        await self.reload()
        if self.bus is not None:
            await self.bus.subscribe(RULES_CHANNEL, self._on_rules_changed)

    async def stop(self) -> None:
        if self.bus is not None:
            await self.bus.unsubscribe(RULES_CHANNEL, self._on_rules_changed)

    def register_transformer(self, name: str, transformer: Transformer) -> None:
        self._transformers[name] = transformer

    async def reload(self) -> int:
        """Replace the in-memory rule set with the stored one."""
        if self.repository is None:
            return len(self._rules)
        self._rules = await self.repository.list_rules()
        logger.info("Routing rules loaded", count=len(self._rules))
        return len(self._rules)

    async def add_rule(self, rule: RoutingRule) -> RoutingRule:
        """Validate, persist and activate a rule, then notify other processes."""
        self._validate_rule(rule)
        if self.repository is not None:
            await self.repository.save_rule(rule)
        self._rules = [r for r in self._rules if r.id != rule.id] + [rule]
        self._rules.sort(key=lambda r: r.position)
        if self.bus is not None:
            await self.bus.publish(RULES_CHANNEL, {"rule_id": rule.id})
        logger.info("Routing rule added", rule_id=rule.id, notification_type=rule.notification_type)
        return rule

    async def remove_rule(self, rule_id: str) -> bool:
        removed = any(r.id == rule_id for r in self._rules)
        self._rules = [r for r in self._rules if r.id != rule_id]
        if self.repository is not None:
            removed = await self.repository.delete_rule(rule_id) or removed
        if removed and self.bus is not None:
            await self.bus.publish(RULES_CHANNEL, {"rule_id": rule_id})
        return removed

    def rules_for(self, notification_type: str) -> List[RoutingRule]:
        return [r for r in self._rules if r.active and r.notification_type == notification_type]

    def _validate_rule(self, rule: RoutingRule) -> None:
        known_conditions = {c.value for c in RuleConditionType}
        unknown = set(rule.conditions) - known_conditions
        if unknown:
            raise RuleEvaluationError(
                f"Unknown rule conditions: {sorted(unknown)}",
                error_code=ErrorCode.RULE_INVALID,
                rule_id=rule.id
            )
        known_actions = {a.value for a in RuleActionType}
        for action in rule.actions:
            if action.get("type") not in known_actions:
                raise RuleEvaluationError(
                    f"Unknown rule action: {action.get('type')}",
                    error_code=ErrorCode.RULE_INVALID,
                    rule_id=rule.id
                )

    async def _on_rules_changed(self, channel: str, message: Dict[str, Any]) -> None:
        await self.reload()

    # Evaluation

    async def apply_rules(self, notification: Notification) -> Notification:
        """
        Apply every matching rule to a copy of ``notification``.

        Returns:
            The routed copy. Its status is ``suppressed`` when a frequency cap
            was reached.
        """
        working = notification.copy()
        now = self.clock()

        for rule in self.rules_for(notification.type):
            matched, capped = await self._evaluate_conditions(rule, working, now)
            if capped:
                working.status = NotificationStatus.SUPPRESSED
                logger.info(
                    "Notification suppressed by frequency cap",
                    notification_id=working.id,
                    rule_id=rule.id,
                    user_id=working.primary_recipient
                )
                return working
            if not matched:
                continue
            working = self._apply_actions(rule, working, now)

        if self.policy.apply_quiet_hours:
            working = await self._apply_quiet_hours(working, now)

        return working

    async def _evaluate_conditions(
        self,
        rule: RoutingRule,
        notification: Notification,
        now: datetime
    ) -> Tuple[bool, bool]:
        """Return ``(matched, frequency_cap_reached)``. Errors fail closed."""
        conditions = rule.conditions
        try:
            unknown = set(conditions) - {c.value for c in RuleConditionType}
            if unknown:
                raise RuleEvaluationError(
                    f"Unknown rule conditions: {sorted(unknown)}",
                    rule_id=rule.id,
                    condition=",".join(sorted(unknown))
                )

            time_window = conditions.get(RuleConditionType.TIME.value)
            if time_window is not None and not self._in_time_window(time_window, now):
                return False, False

            preference = conditions.get(RuleConditionType.USER_PREFERENCE.value)
            if preference is not None:
                user_id = notification.primary_recipient
                if user_id is None:
                    return False, False
                preferences = await self.preference_store.get(user_id)
                if preferences.get(preference["key"]) != preference["value"]:
                    return False, False

            frequency = conditions.get(RuleConditionType.FREQUENCY.value)
            if frequency is not None:
                user_id = notification.primary_recipient
                if user_id is None:
                    return False, False
                window_ms = int(frequency["window"])
                maximum = int(frequency["max"])
                count = await self.delivery_log.count_recent(
                    user_id, notification.type, window_ms, now=now
                )
                if count >= maximum:
                    return False, True

        except (BaseCustomException, KeyError, TypeError, ValueError) as e:
            logger.error(
                "Rule condition evaluation failed",
                rule_id=rule.id,
                notification_id=notification.id,
                error=str(e)
            )
            return False, False

        return True, False

    @staticmethod
    def _in_time_window(window: Dict[str, Any], now: datetime) -> bool:
        """
        ISO datetimes bound an absolute window; ``HH:MM`` values bound a
        daily window in UTC that may wrap midnight.
        """
        start, end = window.get("start"), window.get("end")
        if isinstance(start, str) and len(start) <= 5 and isinstance(end, str) and len(end) <= 5:
            start_time, end_time = time.fromisoformat(start), time.fromisoformat(end)
            current = now.time()
            if start_time <= end_time:
                return start_time <= current <= end_time
            return current >= start_time or current <= end_time

        start_at = parse_datetime(start)
        end_at = parse_datetime(end)
        if start_at is not None and now < start_at:
            return False
        if end_at is not None and now > end_at:
            return False
        return True

    def _apply_actions(self, rule: RoutingRule, notification: Notification, now: datetime) -> Notification:
        working = notification
        for action in rule.actions:
            action_type = action.get("type")
            try:
                if action_type == RuleActionType.SET_PRIORITY.value:
                    working.priority = Priority.coerce(action["value"])

                elif action_type == RuleActionType.ADD_CHANNEL.value:
                    channel = self._channel(action["value"])
                    if channel not in working.force_channels:
                        working.force_channels.append(channel)
                    if channel in working.exclude_channels:
                        working.exclude_channels.remove(channel)

                elif action_type == RuleActionType.REMOVE_CHANNEL.value:
                    channel = self._channel(action["value"])
                    if channel not in working.exclude_channels:
                        working.exclude_channels.append(channel)
                    if channel in working.force_channels:
                        working.force_channels.remove(channel)

                elif action_type == RuleActionType.DELAY.value:
                    working.scheduled_for = now + timedelta(milliseconds=int(action["value"]))

                elif action_type == RuleActionType.AGGREGATE.value:
                    working.aggregate = {
                        "key": str(action.get("key") or working.type),
                        "window_ms": int(action["window"]),
                    }

                elif action_type == RuleActionType.TRANSFORM.value:
                    working = self._transform(action.get("transformer"), working, rule)

                else:
                    logger.warning("Unknown rule action skipped", rule_id=rule.id, action=action_type)
            except (KeyError, TypeError, ValueError) as e:
                logger.error("Rule action skipped", rule_id=rule.id, action=action_type, error=str(e))
        return working

    @staticmethod
    def _channel(value: Any) -> str:
        if value not in ALL_CHANNELS:
            raise ValueError(f"Unknown channel: {value}")
        return value

    def _transform(self, name: Optional[str], notification: Notification, rule: RoutingRule) -> Notification:
        transformer = self._transformers.get(name or "")
        if transformer is None:
            logger.warning("Unknown transformer skipped", rule_id=rule.id, transformer=name)
            return notification
        try:
            result = transformer(notification.copy())
        except Exception as e:
            logger.error("Transformer failed", rule_id=rule.id, transformer=name, error=str(e))
            return notification
        if not isinstance(result, Notification):
            logger.error("Transformer returned no notification", rule_id=rule.id, transformer=name)
            return notification
        return result

    async def _apply_quiet_hours(self, notification: Notification, now: datetime) -> Notification:
        priority = notification.priority or priority_for_type(notification.type)
        user_id = notification.primary_recipient
        if priority == Priority.CRITICAL or user_id is None:
            return notification

        preferences = await self.preference_store.get(user_id)
        quiet_hours = preferences.quiet_hours
        if quiet_hours is None:
            return notification

        moment = notification.scheduled_for or now
        if quiet_hours.contains(moment):
            notification.scheduled_for = quiet_hours.window_end(moment)
            logger.info(
                "Notification delayed for quiet hours",
                notification_id=notification.id,
                user_id=user_id,
                scheduled_for=notification.scheduled_for.isoformat()
            )
        return notification
