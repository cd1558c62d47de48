"""Start approval workflows for expense claims."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from claimflow.services.workflow_service import WorkflowService, workflow_service

logger = logging.getLogger(__name__)

EXPENSE_BUSINESS_TYPE = "EXPENSE"


@dataclass
class ExpenseClaim:
    """The fields of an expense claim the approval workflow needs."""

    id: int
    claim_number: str
    applicant_id: int
    total_amount: Decimal
    description: Optional[str] = None
    currency: str = "USD"
    company: Optional[str] = None
    apply_date: Optional[date] = None


def start_expense_workflow(claim: ExpenseClaim, service: Optional[WorkflowService] = None) -> Dict[str, Any]:
    """Start (or return the already open) approval instance for an expense claim."""
    service = service or workflow_service
    logger.info("Starting expense approval for claim %s (applicant %s)", claim.claim_number, claim.applicant_id)

    instance = service.start_workflow(
        business_type=EXPENSE_BUSINESS_TYPE,
        business_id=claim.claim_number,
        applicant_id=claim.applicant_id,
        amount=claim.total_amount,
        title=f"Expense claim approval - {claim.claim_number}",
        extra_vars={
            "applicationId": claim.id,
            "applicationNumber": claim.claim_number,
            "description": claim.description,
            "currency": claim.currency,
            "company": claim.company,
            "applyDate": claim.apply_date,
        },
    )
    logger.info("Expense claim %s is tracked by workflow instance %s", claim.claim_number, instance["id"])
    return instance
