"""In-memory routing rules."""

from typing import Dict, List

from weddingbell.app.models.domain.rule import RoutingRule
from weddingbell.app.repositories.interfaces import RuleRepository


class InMemoryRuleRepository(RuleRepository):

    def __init__(self):
        self._rules: Dict[str, RoutingRule] = {}

    async def list_rules(self) -> List[RoutingRule]:
        return sorted(
            (RoutingRule.from_dict(rule.to_dict()) for rule in self._rules.values()),
            key=lambda rule: rule.position
        )

    async def save_rule(self, rule: RoutingRule) -> None:
        self._rules[rule.id] = RoutingRule.from_dict(rule.to_dict())

    async def delete_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None
