from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone


class DiscountType(str, Enum):
    PERCENT = "percent"
    FLAT = "flat"


class DiscountScope(str, Enum):
    ORDER = "order"
    ITEM = "item"


class Reason(str, Enum):
    # evaluator
    INACTIVE = "inactive"
    MIN_ORDER_NOT_MET = "min_order_not_met"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    NO_MATCH = "no_match"

    # manual code entry
    EMPTY = "empty"
    NOT_FOUND = "not_found"

    # rule repository
    FETCH_FAILED = "fetch_failed"


class Origin(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class CartLine(BaseModel):
    productRef: str
    name: str
    sku: Optional[str] = None
    quantity: float = Field(default=0, ge=0)
    unitPrice: float = Field(default=0, ge=0)
    lineTotal: float = 0
    taxPercent: float = 0


class ItemMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    tokens: List[str] = Field(default_factory=list)  # matched against line name, case-insensitive
    sku: Optional[str] = None


class DiscountRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    code: str
    type: DiscountType = DiscountType.PERCENT
    scope: DiscountScope = DiscountScope.ORDER
    value: float = 0
    maxValue: float = 0       # 0 = uncapped
    minOrderValue: float = 0  # 0 = no minimum
    stackable: bool = False

    startAt: Optional[datetime] = None
    endAt: Optional[datetime] = None

    itemMatch: Optional[ItemMatch] = None
    active: bool = True
    description: str = "Discount rule"

    @field_validator("startAt", "endAt")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class EvaluationResult(BaseModel):
    valid: bool
    appliedAmount: float = 0
    reason: Optional[Reason] = None
    rule: Optional[DiscountRule] = None


class AppliedDiscount(BaseModel):
    code: str  # combined codes are joined with "+"
    appliedAmount: float
    ruleIds: List[str]
    sourceRule: Optional[DiscountRule] = None
    combinedRules: List[DiscountRule] = Field(default_factory=list)
    origin: Origin = Origin.AUTO


class BillTotals(BaseModel):
    subtotal: float
    tax: float
    discount: float
    grandTotal: float


class RuleEvaluation(BaseModel):
    rule: DiscountRule
    result: EvaluationResult


# ---------------------------
# Request / response bodies
# ---------------------------

class CartRequest(BaseModel):
    lines: List[CartLine]


class CodeRequest(BaseModel):
    code: str
    lines: List[CartLine]


class TotalsRequest(BaseModel):
    lines: List[CartLine]
    code: Optional[str] = None


class RulesResponse(BaseModel):
    rules: List[DiscountRule]
    warning: Optional[str] = None


class BestDiscountResponse(BaseModel):
    applied: Optional[AppliedDiscount]
    totals: BillTotals


class TotalsResponse(BaseModel):
    totals: BillTotals
    applied: Optional[AppliedDiscount] = None
    evaluation: Optional[EvaluationResult] = None
