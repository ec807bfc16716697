"""
Routing rule routes.

Adding a rule persists it, activates it locally and publishes a change on
the ``rules`` bus channel so every other process reloads.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from weddingbell.app.api.deps import get_rule_engine
from weddingbell.app.models.api.management_schemas import RuleCreateRequest, RuleListResponse
from weddingbell.app.models.domain.rule import RoutingRule
from weddingbell.app.services.rule_engine import RuleEngine

router = APIRouter()


@router.get("", response_model=RuleListResponse, summary="List routing rules")
async def list_rules(engine: RuleEngine = Depends(get_rule_engine)) -> Dict[str, Any]:
    rules = [rule.to_dict() for rule in engine.rules]
    return {"rules": rules, "total": len(rules)}


@router.post("", status_code=status.HTTP_201_CREATED, summary="Add a routing rule")
async def add_rule(
    request: RuleCreateRequest,
    engine: RuleEngine = Depends(get_rule_engine)
) -> Dict[str, Any]:
    rule = await engine.add_rule(RoutingRule.from_dict(request.model_dump()))
    return rule.to_dict()


@router.post("/reload", summary="Reload routing rules from storage")
async def reload_rules(engine: RuleEngine = Depends(get_rule_engine)) -> Dict[str, Any]:
    return {"loaded": await engine.reload()}
