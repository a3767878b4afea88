"""
Shared fixtures.

Every test gets its own SQLite file under ``tmp_path`` so API requests and
direct service calls see the same data through separate connections.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-length")

import itertools
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from reimburse import models
from reimburse.database import Base, make_engine
from reimburse.logging_config import reset_logging

_seq = itertools.count(1)


@pytest.fixture(autouse=True)
def _plain_logging():
    """Let records propagate to the root logger so caplog sees them."""
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'reimburse-test.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_company(db):
    def _make(name="Acme Inc", currency_code="USD", country_code="US"):
        company = models.Company(name=name, country_code=country_code, currency_code=currency_code)
        db.add(company)
        db.commit()
        return company

    return _make


@pytest.fixture
def company(make_company):
    return make_company()


@pytest.fixture
def make_user(db, company):
    def _make(role=models.Role.employee, *, manager=None, is_manager_approver=False,
              company_id=None, full_name=None, email=None):
        n = next(_seq)
        user = models.User(
            email=email or f"user{n}@acme.io",
            full_name=full_name or f"User {n}",
            password_hash="not-a-real-hash",
            role=role,
            company_id=company_id or company.id,
            manager_id=manager.id if manager is not None else None,
            is_manager_approver=is_manager_approver,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_expense(db):
    def _make(employee, *, status=models.ExpenseStatus.draft, amount="120.50", currency_code="USD"):
        exp = models.Expense(
            employee_id=employee.id,
            amount=Decimal(amount),
            currency_code=currency_code,
            normalized_amount=Decimal(amount),
            exchange_rate=Decimal("1"),
            category="Meals",
            description="Team lunch",
            expense_date=date(2024, 1, 10),
            status=status,
        )
        db.add(exp)
        db.commit()
        return exp

    return _make


@pytest.fixture
def make_workflow(db, company):
    def _make(approvers, *, sequence=None, rules=None, is_active=True, name="Default", company_id=None):
        ids = [a.id for a in approvers]
        wf = models.ApprovalWorkflow(
            company_id=company_id or company.id,
            name=name,
            approvers=ids,
            approval_sequence=sequence or list(range(1, len(ids) + 1)),
            conditional_rules=rules,
            is_active=is_active,
        )
        db.add(wf)
        db.commit()
        return wf

    return _make


@pytest.fixture
def block_status_writes(db):
    """Refuse every UPDATE of expenses.status, like a row-level security denial."""
    db.execute(text(
        "CREATE TRIGGER deny_expense_status BEFORE UPDATE OF status ON expenses "
        "BEGIN SELECT RAISE(ABORT, 'permission denied for table expenses'); END;"
    ))
    db.commit()


@pytest.fixture
def records(db):
    """Approval records of an expense, read fresh from the database."""

    def _records(expense):
        db.expire_all()
        return (
            db.query(models.ExpenseApproval)
            .filter(models.ExpenseApproval.expense_id == expense.id)
            .order_by(models.ExpenseApproval.sequence_order, models.ExpenseApproval.id)
            .all()
        )

    return _records
