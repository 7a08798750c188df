"""ORM models for the expense kernel."""

from expense_kernel.models.approval_rule import (
    ApprovalRuleApproverModel,
    ApprovalRuleModel,
)
from expense_kernel.models.company import CompanyModel, UserModel
from expense_kernel.models.expense import ApprovalEntryModel, ExpenseModel
from expense_kernel.models.notification import NotificationModel


def register_models() -> tuple[type, ...]:
    """Return every mapped class; importing this package registers the tables."""
    return (
        CompanyModel,
        UserModel,
        ApprovalRuleModel,
        ApprovalRuleApproverModel,
        ExpenseModel,
        ApprovalEntryModel,
        NotificationModel,
    )


__all__ = [
    "ApprovalEntryModel",
    "ApprovalRuleApproverModel",
    "ApprovalRuleModel",
    "CompanyModel",
    "ExpenseModel",
    "NotificationModel",
    "UserModel",
    "register_models",
]
