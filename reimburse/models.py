from sqlalchemy import Integer, String, ForeignKey, Boolean, Numeric, Date, DateTime, Text, Enum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column
from datetime import date, datetime
from decimal import Decimal
from reimburse.database import Base
import enum

class Role(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    employee = "employee"

APPROVER_ROLES = (Role.manager, Role.admin)

class Company(Base):
    __tablename__ = "companies"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    country_code: Mapped[str] = mapped_column(String, nullable=False)
    currency_code: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    users = relationship("User", back_populates="company")
    workflows = relationship("ApprovalWorkflow", back_populates="company")

class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role), nullable=False, default=Role.employee)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    manager_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    is_manager_approver: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    company = relationship("Company", back_populates="users")
    manager = relationship("User", remote_side=[id])

    @property
    def is_approval_eligible(self) -> bool:
        return self.role in APPROVER_ROLES or bool(self.is_manager_approver)

class RuleType(str, enum.Enum):
    percentage = "percentage"
    specific_approver = "specific_approver"
    hybrid = "hybrid"

class ApprovalWorkflow(Base):
    __tablename__ = "approval_workflows"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    approvers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    approval_sequence: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # {"type": "percentage"|"specific_approver"|"hybrid", "percentage": 60, "specific_approver_id": 3}
    conditional_rules: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    company = relationship("Company", back_populates="workflows")

    def ordered_approvers(self) -> list[int]:
        """Approver ids sorted by their position in approval_sequence."""
        pairs = list(zip(self.approval_sequence or [], self.approvers or []))
        return [approver for _, approver in sorted(pairs, key=lambda p: p[0])]

class ExpenseStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"

TERMINAL_EXPENSE_STATUSES = (ExpenseStatus.approved, ExpenseStatus.rejected)

class Expense(Base):
    __tablename__ = "expenses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(String, nullable=False)
    normalized_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))  # in company currency
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("1"))
    category: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    receipt_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[ExpenseStatus] = mapped_column(Enum(ExpenseStatus), default=ExpenseStatus.draft, nullable=False)
    workflow_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("approval_workflows.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    employee = relationship("User")
    workflow = relationship("ApprovalWorkflow")
    approvals = relationship("ExpenseApproval", back_populates="expense", cascade="all, delete-orphan",
                             order_by="ExpenseApproval.sequence_order")

class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"

class ExpenseApproval(Base):
    __tablename__ = "expense_approvals"
    __table_args__ = (UniqueConstraint("expense_id", "approver_id", name="uq_expense_approver"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    expense_id: Mapped[int] = mapped_column(Integer, ForeignKey("expenses.id"), nullable=False, index=True)
    approver_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ApprovalStatus] = mapped_column(Enum(ApprovalStatus), default=ApprovalStatus.pending, nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    expense = relationship("Expense", back_populates="approvals")
    approver = relationship("User")

class Decision(str, enum.Enum):
    approve = "approve"
    reject = "reject"

    @property
    def resulting_status(self) -> ApprovalStatus:
        return ApprovalStatus.approved if self is Decision.approve else ApprovalStatus.rejected
