"""
Pydantic schemas for alert conditions and inbound budget events.

AlertCondition is the immutable message consumed by the evaluator. The
Budget subsystem publishes InboundEvent payloads (camelCase on the wire) which
are converted to conditions before evaluation.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from alert_engine.models.alert import AlertKind


class AlertCondition(BaseModel):
    """
    Immutable description of a budget state change.

    Fields accept both snake_case names and the camelCase aliases used by the
    Budget subsystem.
    """

    kind: AlertKind
    user_id: int = Field(..., alias="userId", gt=0)
    budget_id: str = Field(..., alias="budgetId", min_length=1, max_length=64)
    category_id: Optional[str] = Field(default=None, alias="categoryId", max_length=64)
    utilization_percentage: float = Field(..., alias="utilizationPercentage", ge=0)
    over_amount: Optional[float] = Field(default=None, alias="overAmount", ge=0)
    period_start: datetime = Field(..., alias="periodStart")
    period_end: datetime = Field(..., alias="periodEnd")

    # Rendering context
    budget_name: Optional[str] = Field(default=None, alias="budgetName", max_length=200)
    category_name: Optional[str] = Field(default=None, alias="categoryName", max_length=200)
    currency: str = Field(default="$", max_length=8)
    occurred_at: Optional[datetime] = Field(default=None, alias="occurredAt")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @model_validator(mode="after")
    def check_consistency(self) -> "AlertCondition":
        """Reject conditions whose fields contradict each other."""
        if self.period_end <= self.period_start:
            raise ValueError("periodEnd must be after periodStart")
        if self.kind == AlertKind.CATEGORY_OVERSPEND and not self.category_id:
            raise ValueError("categoryId is required for category overspend conditions")
        return self

    @property
    def is_category(self) -> bool:
        return self.kind == AlertKind.CATEGORY_OVERSPEND


class InboundEvent(BaseModel):
    """
    Event emitted by the Budget subsystem.

    Example:
        {
            "type": "budget.threshold_crossed",
            "userId": 7,
            "budgetId": "bdg_groceries",
            "utilizationPercentage": 135.0,
            "overAmount": 175.0,
            "periodStart": "2026-10-01T00:00:00",
            "periodEnd": "2026-10-31T23:59:59"
        }
    """

    type: Literal["budget.threshold_crossed", "category.overspent"]
    user_id: int = Field(..., alias="userId", gt=0)
    budget_id: str = Field(..., alias="budgetId", min_length=1, max_length=64)
    category_id: Optional[str] = Field(default=None, alias="categoryId", max_length=64)
    utilization_percentage: float = Field(..., alias="utilizationPercentage", ge=0)
    over_amount: Optional[float] = Field(default=None, alias="overAmount", ge=0)
    period_start: datetime = Field(..., alias="periodStart")
    period_end: datetime = Field(..., alias="periodEnd")
    budget_name: Optional[str] = Field(default=None, alias="budgetName")
    category_name: Optional[str] = Field(default=None, alias="categoryName")
    currency: str = "$"

    model_config = ConfigDict(populate_by_name=True)

    def to_condition(self) -> AlertCondition:
        """
        Convert the wire event to an AlertCondition.

        budget.threshold_crossed maps to BUDGET_EXCEEDED at or above 100%
        utilization and BUDGET_WARNING below it.
        """
        if self.type == "category.overspent":
            kind = AlertKind.CATEGORY_OVERSPEND
        elif self.utilization_percentage >= 100:
            kind = AlertKind.BUDGET_EXCEEDED
        else:
            kind = AlertKind.BUDGET_WARNING

        return AlertCondition(
            kind=kind,
            user_id=self.user_id,
            budget_id=self.budget_id,
            category_id=self.category_id,
            utilization_percentage=self.utilization_percentage,
            over_amount=self.over_amount,
            period_start=self.period_start,
            period_end=self.period_end,
            budget_name=self.budget_name,
            category_name=self.category_name,
            currency=self.currency,
        )
