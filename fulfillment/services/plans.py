"""Static plan catalog. Prices are in KES."""

from pydantic import BaseModel

from fulfillment.core.exceptions import ValidationError


class Plan(BaseModel):
    credits: int
    price: int
    duration_days: int | None = None  # set for unlimited-style plans
    name: str | None = None


PLANS: dict[str, Plan] = {
    "starter": Plan(credits=3, price=10),
    "pro": Plan(credits=19, price=29),
    "unlimited": Plan(credits=9999, price=99, duration_days=30),
    "BASIC_LABS": Plan(credits=0, price=39, name="Report Labs"),
    "REPORT_LABS": Plan(credits=0, price=39, name="Report Labs"),
}


def get_plan(plan_id: str | None) -> Plan:
    plan = PLANS.get(plan_id or "")
    if plan is None:
        raise ValidationError("Invalid plan", details={"plan_id": plan_id})
    return plan
