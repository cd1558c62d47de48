"""Chooses which deployed process definition a business type starts."""
from __future__ import annotations

import logging
from typing import List, Optional

from claimflow.exceptions import NoDeployedTemplate
from claimflow.models import WorkflowTemplate
from claimflow.services.engine import WorkflowEngine

logger = logging.getLogger(__name__)

BUSINESS_KEYWORDS = {
    "expense": ("expense", "reimbursement"),
    "travel": ("travel", "trip"),
}


def _matches_business_type(template: WorkflowTemplate, business_type: str) -> bool:
    if template.type and template.type.lower() == business_type.lower():
        return True
    name = (template.name or "").lower()
    wanted = business_type.lower()
    for category, keywords in BUSINESS_KEYWORDS.items():
        if category in wanted:
            return template.type == category or any(keyword in name for keyword in keywords)
    return False


class ProcessDefinitionKeyResolver:
    """Maps a business type to a process key the engine can actually start.

    Order: a deployed template matching the business type, the default
    expense template for expense-like types, then any deployed template. A
    template whose key has no active definition can still be served through
    the compatibility key when that one is deployed.
    """

    def __init__(self, engine: WorkflowEngine, compat_process_key: Optional[str] = None):
        self.engine = engine
        self.compat_process_key = compat_process_key

    def resolve(self, business_type: str) -> str:
        deployed = WorkflowTemplate.deployed_active()
        logger.info("Resolving process key for %s among %s deployed template(s)", business_type, len(deployed))

        for template in [t for t in deployed if _matches_business_type(t, business_type)]:
            key = self._available_key(template)
            if key:
                logger.info("Using template %s (process key %s) for %s", template.name, key, business_type)
                return key
            logger.warning("Template %s is deployed locally but %s is not active in the engine", template.name, template.process_key)

        if "expense" in business_type.lower():
            for template in [t for t in deployed if t.type == "expense"]:
                key = self._available_key(template)
                if key:
                    logger.info("Using default expense template %s (process key %s)", template.name, key)
                    return key

        for template in deployed:
            key = self._available_key(template)
            if key:
                logger.info("Using first available template %s (process key %s) for %s", template.name, key, business_type)
                return key

        total = WorkflowTemplate.count_all()
        self._log_inventory(business_type, total, deployed)
        raise NoDeployedTemplate(business_type, total, len(deployed))

    def _available_key(self, template: WorkflowTemplate) -> Optional[str]:
        if self.engine.count_active_definitions(template.process_key) > 0:
            return template.process_key
        compat = self.compat_process_key
        if compat and compat != template.process_key and self.engine.count_active_definitions(compat) > 0:
            logger.warning("Process key %s not deployed, using compatibility key %s", template.process_key, compat)
            return compat
        return None

    @staticmethod
    def _log_inventory(business_type: str, total: int, deployed: List[WorkflowTemplate]) -> None:
        logger.error(
            "No usable workflow template for %s: %s template(s) in total, %s deployed",
            business_type,
            total,
            len(deployed),
        )
        for template in WorkflowTemplate.query.order_by(WorkflowTemplate.id.asc()).all():
            logger.error(
                "  template id=%s name=%s type=%s status=%s deployed=%s key=%s",
                template.id,
                template.name,
                template.type,
                template.status,
                template.is_deployed,
                template.process_key,
            )
