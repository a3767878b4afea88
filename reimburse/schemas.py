from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

class Role(str, Enum):
    admin = "admin"
    manager = "manager"
    employee = "employee"

class SignupRequest(BaseModel):
    email: EmailStr
    full_name: str = Field(min_length=2)
    password: str = Field(min_length=6)
    company_name: str = Field(min_length=2)
    country_code: str = Field(min_length=2)  # e.g., 'US', 'IN'

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: EmailStr
    full_name: str
    role: Role
    company_id: int
    manager_id: Optional[int] = None
    is_manager_approver: bool

class ExpenseStatus(str, Enum):
    draft = "draft"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"

class ApprovalStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class CreateUserRequest(BaseModel):
    email: EmailStr
    full_name: str = Field(min_length=2)
    password: str = Field(min_length=6)
    role: Role
    manager_id: Optional[int] = None
    is_manager_approver: bool = False

class UserUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2)
    role: Optional[Role] = None
    manager_id: Optional[int] = None
    is_manager_approver: Optional[bool] = None

class ProfileUpdate(BaseModel):
    full_name: str = Field(min_length=2)

class CompanyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    country_code: str
    currency_code: str

class CompanyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    currency_code: Optional[str] = Field(None, min_length=3, max_length=3)

class ExpenseCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    currency_code: str = Field(min_length=3, max_length=3)
    category: str = Field(min_length=1)
    description: str = Field(min_length=1)
    expense_date: date
    receipt_url: Optional[str] = None

class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    employee_id: int
    amount: Decimal
    currency_code: str
    normalized_amount: Decimal
    exchange_rate: Decimal
    category: str
    description: str
    expense_date: date
    receipt_url: Optional[str]
    status: ExpenseStatus
    workflow_id: Optional[int]
    created_at: datetime

class ExpenseStats(BaseModel):
    scope: str  # own, team or company
    currency_code: str
    total_expenses: int = 0
    draft_expenses: int = 0
    pending_expenses: int = 0
    approved_expenses: int = 0
    rejected_expenses: int = 0
    total_amount: Decimal = Decimal("0")
    pending_amount: Decimal = Decimal("0")

class DecisionAction(str, Enum):
    approve = "approve"
    reject = "reject"

class DecisionRequest(BaseModel):
    action: DecisionAction
    comments: Optional[str] = None

class OutcomeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: DecisionAction
    expense_id: int
    finalized: bool
    status: ExpenseStatus
    fallback_used: bool

class ApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    expense_id: int
    approver_id: int
    sequence_order: int
    status: ApprovalStatus
    comments: Optional[str]
    approved_at: Optional[datetime]
    is_fallback: bool

class RuleType(str, Enum):
    percentage = "percentage"
    specific_approver = "specific_approver"
    hybrid = "hybrid"

class ConditionalRules(BaseModel):
    type: RuleType
    percentage: Optional[float] = Field(None, ge=0, le=100)
    specific_approver_id: Optional[int] = None

class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1)
    approvers: List[int] = Field(min_length=1)
    approval_sequence: Optional[List[int]] = None
    conditional_rules: Optional[ConditionalRules] = None
    is_active: bool = True

class WorkflowUpdate(BaseModel):
    name: str = Field(min_length=1)
    approvers: List[int] = Field(min_length=1)
    approval_sequence: Optional[List[int]] = None
    conditional_rules: Optional[ConditionalRules] = None

class WorkflowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    name: str
    approvers: List[int]
    approval_sequence: List[int]
    conditional_rules: Optional[ConditionalRules]
    is_active: bool
