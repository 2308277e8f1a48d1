"""Static plan catalogue and upgrade paths."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional


WILDCARD = "*"


class PlanId(str, Enum):
    FREE = "free"
    TRIAL = "trial"
    PRO = "pro"
    ULTRA = "ultra"


@dataclass(frozen=True)
class PlanDefinition:
    """Limits and entitlements of one plan.

    ``daily_generation_limit`` and ``monthly_generation_limit`` are mutually
    exclusive; a plan with neither is unlimited.
    """

    plan_id: PlanId
    name: str
    monthly_price: int
    yearly_price: int
    daily_generation_limit: Optional[int] = None
    monthly_generation_limit: Optional[int] = None
    allowed_styles: FrozenSet[str] = field(default_factory=lambda: frozenset({WILDCARD}))
    allowed_quality: FrozenSet[str] = field(default_factory=lambda: frozenset({"standard"}))
    max_batch_size: int = 1
    credits_per_generation: int = 1
    is_one_time: bool = False
    priority_queue: bool = False
    api_access: bool = False

    def __post_init__(self) -> None:
        if self.daily_generation_limit is not None and self.monthly_generation_limit is not None:
            raise ValueError(f"{self.plan_id.value}: daily and monthly limits are mutually exclusive")

    def allows_style(self, style: Optional[str]) -> bool:
        if not style:
            return True
        return WILDCARD in self.allowed_styles or style in self.allowed_styles

    def allows_quality(self, quality: Optional[str]) -> bool:
        if not quality:
            return True
        return WILDCARD in self.allowed_quality or quality in self.allowed_quality

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id.value,
            "name": self.name,
            "monthly_price": self.monthly_price,
            "yearly_price": self.yearly_price,
            "daily_generation_limit": self.daily_generation_limit,
            "monthly_generation_limit": self.monthly_generation_limit,
            "allowed_styles": sorted(self.allowed_styles),
            "allowed_quality": sorted(self.allowed_quality),
            "max_batch_size": self.max_batch_size,
            "credits_per_generation": self.credits_per_generation,
            "is_one_time": self.is_one_time,
            "priority_queue": self.priority_queue,
            "api_access": self.api_access,
        }


PLAN_DEFINITIONS: Mapping[PlanId, PlanDefinition] = MappingProxyType(
    {
        PlanId.FREE: PlanDefinition(
            plan_id=PlanId.FREE,
            name="Free",
            monthly_price=0,
            yearly_price=0,
            daily_generation_limit=1,
            allowed_styles=frozenset({"anime", "realistic", "cartoon"}),
            allowed_quality=frozenset({"standard"}),
            max_batch_size=1,
        ),
        PlanId.TRIAL: PlanDefinition(
            plan_id=PlanId.TRIAL,
            name="Trial Pack",
            monthly_price=399,
            yearly_price=399,
            monthly_generation_limit=10,
            allowed_quality=frozenset({"standard", "hd"}),
            max_batch_size=2,
            is_one_time=True,
            priority_queue=True,
        ),
        PlanId.PRO: PlanDefinition(
            plan_id=PlanId.PRO,
            name="Pro",
            monthly_price=1099,
            yearly_price=10990,
            monthly_generation_limit=50,
            allowed_quality=frozenset({"standard", "hd", "uhd"}),
            max_batch_size=4,
            priority_queue=True,
            api_access=True,
        ),
        PlanId.ULTRA: PlanDefinition(
            plan_id=PlanId.ULTRA,
            name="Ultra",
            monthly_price=3499,
            yearly_price=34990,
            monthly_generation_limit=200,
            allowed_quality=frozenset({"standard", "hd", "uhd", "8k"}),
            max_batch_size=10,
            priority_queue=True,
            api_access=True,
        ),
    }
)

UPGRADE_PATH: Mapping[PlanId, Optional[PlanId]] = MappingProxyType(
    {
        PlanId.FREE: PlanId.TRIAL,
        PlanId.TRIAL: PlanId.PRO,
        PlanId.PRO: PlanId.ULTRA,
        PlanId.ULTRA: None,
    }
)


def get_plan(plan_id: Any) -> PlanDefinition:
    """Resolve a plan id (enum or raw string). Unknown ids raise ValueError."""
    return PLAN_DEFINITIONS[PlanId(plan_id)]


def purchasable_plans() -> List[PlanDefinition]:
    return [plan for plan_id, plan in PLAN_DEFINITIONS.items() if plan_id != PlanId.FREE]


def recommended_upgrade(plan_id: Any) -> Optional[PlanId]:
    return UPGRADE_PATH[PlanId(plan_id)]


def upgrade_for_quality(quality: Optional[str]) -> PlanId:
    if quality == "8k":
        return PlanId.ULTRA
    if quality == "uhd":
        return PlanId.PRO
    return PlanId.TRIAL


def upgrade_for_batch_size(batch_size: int) -> Optional[PlanId]:
    """Cheapest plan whose batch limit covers ``batch_size``."""
    for plan_id in (PlanId.FREE, PlanId.TRIAL, PlanId.PRO, PlanId.ULTRA):
        if PLAN_DEFINITIONS[plan_id].max_batch_size >= batch_size:
            return plan_id
    return None
