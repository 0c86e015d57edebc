"""CTO engine services."""

from cto_engine.services.state_machine import ApprovalStateMachine
from cto_engine.services.approver_resolver import (
    ApproverChain,
    ApproverResolver,
    ApproverSettingService,
    StaticApproverResolver,
)
from cto_engine.services.credit_service import BalanceSummary, CreditService, Duration
from cto_engine.services.application_service import ApplicationService
from cto_engine.services.approval_service import ApprovalService

__all__ = [
    "ApprovalStateMachine",
    "ApproverChain",
    "ApproverResolver",
    "ApproverSettingService",
    "StaticApproverResolver",
    "BalanceSummary",
    "CreditService",
    "Duration",
    "ApplicationService",
    "ApprovalService",
]
