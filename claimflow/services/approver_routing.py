"""Approver routing: who approves each step of an expense claim.

Each approver role is a small strategy that lists its candidate lookups in
fallback order. The first lookup that yields an active user wins; when every
lookup comes back empty the role fails with ``NoApproverFound``.
"""
from __future__ import annotations

import abc
import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from flask import current_app

from claimflow.exceptions import NoApproverFound
from claimflow.models import User, UserRole
from claimflow.services.org_lookup import OrgLookup, org_lookup

logger = logging.getLogger(__name__)

EXECUTIVE_PRIORITY = ("CEO", "COO", "CFO", "CTO")

Candidate = Tuple[str, Callable[[], Optional[User]]]


class ApproverRole(enum.Enum):
    LINE_MANAGER = "line_manager"
    FINANCE_LEAD = "finance_lead"
    COMPLIANCE_LEAD = "compliance_lead"
    FUNCTIONAL_HEAD = "functional_head"
    EXECUTIVE = "executive"


@dataclass(frozen=True)
class RoutingSettings:
    high_value_threshold: Decimal = Decimal("100000")
    fallback_admin_email: Optional[str] = None
    fallback_finance_email: Optional[str] = None
    fallback_compliance_email: Optional[str] = None
    finance_department: str = "Finance"
    compliance_department: str = "Compliance"
    functional_head_titles: Mapping[str, str] = field(default_factory=dict)
    default_functional_head_title: str = "COO"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RoutingSettings":
        return cls(
            high_value_threshold=Decimal(str(config.get("HIGH_VALUE_THRESHOLD", "100000"))),
            fallback_admin_email=config.get("FALLBACK_ADMIN_EMAIL"),
            fallback_finance_email=config.get("FALLBACK_FINANCE_EMAIL"),
            fallback_compliance_email=config.get("FALLBACK_COMPLIANCE_EMAIL"),
            finance_department=config.get("FINANCE_DEPARTMENT", "Finance"),
            compliance_department=config.get("COMPLIANCE_DEPARTMENT", "Compliance"),
            functional_head_titles=dict(config.get("FUNCTIONAL_HEAD_TITLES") or {}),
            default_functional_head_title=config.get("DEFAULT_FUNCTIONAL_HEAD_TITLE", "COO"),
        )


@dataclass(frozen=True)
class RoutingContext:
    applicant: User
    amount: Decimal
    settings: RoutingSettings


@dataclass(frozen=True)
class ApproverChain:
    manager_id: int
    finance_manager_id: int
    compliance_manager_id: int
    functional_head_id: int
    executive_id: int

    def to_variables(self) -> Dict[str, int]:
        """Process variable names referenced by the deployed BPMN."""
        return {
            "managerId": self.manager_id,
            "financeManagerId": self.finance_manager_id,
            "complianceManagerId": self.compliance_manager_id,
            "functionalHeadId": self.functional_head_id,
            "executiveId": self.executive_id,
        }


class RoleResolver(abc.ABC):
    role: ApproverRole

    def __init__(self, lookup: OrgLookup = org_lookup):
        self.lookup = lookup

    @abc.abstractmethod
    def candidates(self, context: RoutingContext) -> Iterable[Candidate]:
        """Labelled lookups, most preferred first."""

    def resolve(self, context: RoutingContext) -> int:
        for label, find in self.candidates(context):
            user = find()
            if user is not None:
                logger.info(
                    "Resolved %s for applicant %s via %s: %s (id=%s)",
                    self.role.value,
                    context.applicant.id,
                    label,
                    user.name,
                    user.id,
                )
                return user.id
            logger.debug("No %s via %s, trying next fallback", self.role.value, label)
        raise NoApproverFound(self.role.value, context.applicant.id)

    def _fallback_admin(self, context: RoutingContext) -> Candidate:
        return "fallback administrator", lambda: self.lookup.find_active_by_email(context.settings.fallback_admin_email)


class LineManagerResolver(RoleResolver):
    role = ApproverRole.LINE_MANAGER

    def candidates(self, context: RoutingContext) -> Iterable[Candidate]:
        applicant = context.applicant
        yield "direct manager", lambda: self.lookup.find_direct_manager(applicant.id)
        yield "department manager", lambda: self.lookup.find_department_lead(applicant.department, UserRole.MANAGER)
        yield self._fallback_admin(context)


class FinanceLeadResolver(RoleResolver):
    role = ApproverRole.FINANCE_LEAD

    def candidates(self, context: RoutingContext) -> Iterable[Candidate]:
        settings = context.settings
        yield "finance department manager", lambda: self.lookup.find_department_lead(
            settings.finance_department, UserRole.MANAGER
        )
        yield "fallback finance officer", lambda: self.lookup.find_active_by_email(settings.fallback_finance_email)


class ComplianceLeadResolver(RoleResolver):
    role = ApproverRole.COMPLIANCE_LEAD

    def candidates(self, context: RoutingContext) -> Iterable[Candidate]:
        settings = context.settings
        yield "compliance department manager", lambda: self.lookup.find_department_lead(
            settings.compliance_department, UserRole.MANAGER
        )
        yield "fallback compliance officer", lambda: self.lookup.find_active_by_email(
            settings.fallback_compliance_email
        )


class FunctionalHeadResolver(RoleResolver):
    role = ApproverRole.FUNCTIONAL_HEAD

    @staticmethod
    def title_for(department: Optional[str], settings: RoutingSettings) -> str:
        return settings.functional_head_titles.get(department or "", settings.default_functional_head_title)

    def candidates(self, context: RoutingContext) -> Iterable[Candidate]:
        title = self.title_for(context.applicant.department, context.settings)
        yield f"functional head {title}", lambda: self.lookup.find_first_by_title(title)
        yield "any COO", lambda: self.lookup.find_first_by_title("COO")
        yield self._fallback_admin(context)


class ExecutiveResolver(RoleResolver):
    role = ApproverRole.EXECUTIVE

    @staticmethod
    def title_for(amount: Decimal, settings: RoutingSettings) -> str:
        return "CEO" if amount > settings.high_value_threshold else "COO"

    def candidates(self, context: RoutingContext) -> Iterable[Candidate]:
        title = self.title_for(context.amount, context.settings)
        yield f"executive {title}", lambda: self.lookup.find_first_by_title(title)
        for alternative in EXECUTIVE_PRIORITY:
            yield f"alternate executive {alternative}", lambda alternative=alternative: self.lookup.find_first_by_title(
                alternative
            )
        yield self._fallback_admin(context)


DEFAULT_RESOLVERS = (
    LineManagerResolver,
    FinanceLeadResolver,
    ComplianceLeadResolver,
    FunctionalHeadResolver,
    ExecutiveResolver,
)


class ApproverRouter:
    """Resolves the full approver chain for an applicant and amount."""

    def __init__(self, settings: Optional[RoutingSettings] = None, lookup: OrgLookup = org_lookup):
        self._settings = settings
        self.resolvers: Dict[ApproverRole, RoleResolver] = {
            resolver.role: resolver(lookup) for resolver in DEFAULT_RESOLVERS
        }

    @property
    def settings(self) -> RoutingSettings:
        if self._settings is None:
            return RoutingSettings.from_config(current_app.config)
        return self._settings

    def context_for(self, applicant: User, amount: Decimal | int | float | str) -> RoutingContext:
        return RoutingContext(applicant=applicant, amount=Decimal(str(amount)), settings=self.settings)

    def resolve_role(self, role: ApproverRole, context: RoutingContext) -> int:
        return self.resolvers[role].resolve(context)

    def resolve_chain(self, applicant: User, amount: Decimal | int | float | str) -> ApproverChain:
        context = self.context_for(applicant, amount)
        return ApproverChain(
            manager_id=self.resolve_role(ApproverRole.LINE_MANAGER, context),
            finance_manager_id=self.resolve_role(ApproverRole.FINANCE_LEAD, context),
            compliance_manager_id=self.resolve_role(ApproverRole.COMPLIANCE_LEAD, context),
            functional_head_id=self.resolve_role(ApproverRole.FUNCTIONAL_HEAD, context),
            executive_id=self.resolve_role(ApproverRole.EXECUTIVE, context),
        )
