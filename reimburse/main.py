from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import List, Optional
from decimal import Decimal
from uuid import uuid4

from reimburse.database import Base, engine, get_db
from reimburse import models
from reimburse import schemas
from reimburse.auth import get_password_hash, verify_password, create_access_token, get_current_user, require_role
from reimburse.config import settings
from reimburse.currency import get_company_currency_for_country, convert
from reimburse.exceptions import ApprovalWorkflowError, NotFoundError
from reimburse.logging_config import LogContext, configure_logging, get_logger
from reimburse import approvals, lifecycle, workflow
from reimburse.orchestrator import ApprovalOrchestrator, list_pending_for

configure_logging(level=settings.LOG_LEVEL)
logger = get_logger("api")

app = FastAPI(title="Expense Approvals API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)

@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    with LogContext.bind(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

@app.exception_handler(ApprovalWorkflowError)
def approval_error_handler(request: Request, exc: ApprovalWorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.for_action(), "code": exc.code})

@app.get("/health")
def health():
    return {"status": "ok"}

# ---- Auth & Bootstrap ----

@app.post("/auth/signup", response_model=schemas.TokenResponse)
def signup(payload: schemas.SignupRequest, db: Session = Depends(get_db)):
    if db.query(models.User).filter(models.User.email == payload.email).first():
        raise HTTPException(status_code=400, detail="Email already registered")
    # Create Company
    currency = get_company_currency_for_country(payload.country_code)
    company = models.Company(name=payload.company_name, country_code=payload.country_code.upper(), currency_code=currency)
    db.add(company)
    db.flush()

    # Create Admin
    admin = models.User(
        email=payload.email,
        full_name=payload.full_name,
        password_hash=get_password_hash(payload.password),
        role=models.Role.admin,
        company_id=company.id,
        is_manager_approver=True,
    )
    db.add(admin)
    db.commit()
    logger.info("Company created", extra={"event": "company.created", "company_id": company.id, "currency": currency})
    token = create_access_token({"sub": str(admin.id)})
    return schemas.TokenResponse(access_token=token)

@app.post("/auth/login", response_model=schemas.TokenResponse)
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.email == payload.email).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(user.id)})
    return schemas.TokenResponse(access_token=token)

@app.get("/auth/me", response_model=schemas.UserOut)
def me(user: models.User = Depends(get_current_user)):
    return user

@app.patch("/auth/me", response_model=schemas.UserOut)
def update_me(payload: schemas.ProfileUpdate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    user.full_name = payload.full_name.strip()
    db.commit()
    db.refresh(user)
    return user

# ---- Company ----

@app.get("/company", response_model=schemas.CompanyOut)
def get_company(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.get(models.Company, user.company_id)

@app.patch("/company", response_model=schemas.CompanyOut)
def update_company(payload: schemas.CompanyUpdate, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    company = db.get(models.Company, admin.company_id)
    if payload.name is not None:
        company.name = payload.name
    if payload.currency_code is not None:
        company.currency_code = payload.currency_code.upper()
    db.commit()
    return company

# ---- Admin: Users & Workflows ----

@app.post("/admin/users", response_model=schemas.UserOut)
def create_user(payload: schemas.CreateUserRequest, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    if db.query(models.User).filter(models.User.email == payload.email).first():
        raise HTTPException(status_code=400, detail="Email already exists")
    if payload.manager_id is not None:
        mgr = db.get(models.User, payload.manager_id)
        if mgr is None or mgr.company_id != admin.company_id:
            raise HTTPException(status_code=400, detail="Manager must belong to your company")
    user = models.User(
        email=payload.email,
        full_name=payload.full_name,
        password_hash=get_password_hash(payload.password),
        role=models.Role(payload.role.value),
        company_id=admin.company_id,
        manager_id=payload.manager_id,
        is_manager_approver=payload.is_manager_approver
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user

@app.get("/admin/users", response_model=List[schemas.UserOut])
def list_users(admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    return db.query(models.User).filter(models.User.company_id == admin.company_id).order_by(models.User.id).all()

def _company_user(db: Session, admin: models.User, user_id: int) -> models.User:
    user = db.get(models.User, user_id)
    if user is None or user.company_id != admin.company_id:
        raise HTTPException(status_code=404, detail="User not found")
    return user

@app.patch("/admin/users/{user_id}", response_model=schemas.UserOut)
def update_user(user_id: int, payload: schemas.UserUpdate, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    user = _company_user(db, admin, user_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("manager_id") is not None:
        if changes["manager_id"] == user.id:
            raise HTTPException(status_code=400, detail="A user cannot be their own manager")
        mgr = db.get(models.User, changes["manager_id"])
        if mgr is None or mgr.company_id != admin.company_id:
            raise HTTPException(status_code=400, detail="Manager must belong to your company")
    if changes.get("role") is not None:
        if user.id == admin.id and changes["role"] != schemas.Role.admin:
            raise HTTPException(status_code=400, detail="You cannot change your own role")
        changes["role"] = models.Role(changes["role"].value)

    for field, value in changes.items():
        # only manager_id may be cleared
        if value is None and field != "manager_id":
            continue
        setattr(user, field, value)

    if not user.is_approval_eligible:
        seats = workflow.workflows_listing(db, admin.company_id, user.id)
        if seats:
            db.rollback()
            raise HTTPException(status_code=400, detail=f"User is an approver in workflow '{seats[0].name}'")
    db.commit()
    db.refresh(user)
    logger.info("User updated", extra={"event": "user.updated", "user_id": user.id, "fields": sorted(changes)})
    return user

@app.delete("/admin/users/{user_id}", status_code=204)
def delete_user(user_id: int, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    user = _company_user(db, admin, user_id)
    if user.id == admin.id:
        raise HTTPException(status_code=400, detail="You cannot delete yourself")
    has_history = (
        db.query(models.Expense.id).filter(models.Expense.employee_id == user.id).first() is not None
        or db.query(models.ExpenseApproval.id).filter(models.ExpenseApproval.approver_id == user.id).first() is not None
    )
    if has_history:
        raise HTTPException(status_code=409, detail="User has expenses or approval records")
    seats = workflow.workflows_listing(db, admin.company_id, user.id)
    if seats:
        raise HTTPException(status_code=409, detail=f"User is an approver in workflow '{seats[0].name}'")
    # reports fall back to the company-wide approver
    db.query(models.User).filter(models.User.manager_id == user.id).update(
        {models.User.manager_id: None}, synchronize_session=False
    )
    db.delete(user)
    db.commit()
    logger.info("User deleted", extra={"event": "user.deleted", "user_id": user_id})

def _rules(payload) -> dict | None:
    if payload.conditional_rules is None:
        return None
    return payload.conditional_rules.model_dump(mode="json", exclude_none=True)

@app.post("/admin/workflows", response_model=schemas.WorkflowOut)
def create_workflow(payload: schemas.WorkflowCreate, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    wf = workflow.create_workflow(
        db, admin.company_id, payload.name, payload.approvers,
        approval_sequence=payload.approval_sequence,
        conditional_rules=_rules(payload),
        is_active=payload.is_active,
    )
    db.commit()
    return wf

@app.get("/admin/workflows", response_model=List[schemas.WorkflowOut])
def list_workflows(admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    return workflow.list_workflows(db, admin.company_id)

@app.put("/admin/workflows/{workflow_id}", response_model=schemas.WorkflowOut)
def update_workflow(workflow_id: int, payload: schemas.WorkflowUpdate, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    wf = workflow.get_workflow(db, admin.company_id, workflow_id)
    workflow.update_workflow(db, wf, payload.name, payload.approvers,
                             approval_sequence=payload.approval_sequence,
                             conditional_rules=_rules(payload))
    db.commit()
    return wf

@app.post("/admin/workflows/{workflow_id}/toggle", response_model=schemas.WorkflowOut)
def toggle_workflow(workflow_id: int, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    wf = workflow.get_workflow(db, admin.company_id, workflow_id)
    workflow.set_workflow_active(db, wf, not wf.is_active)
    db.commit()
    return wf

@app.delete("/admin/workflows/{workflow_id}", status_code=204)
def delete_workflow(workflow_id: int, admin: models.User = Depends(require_role(models.Role.admin)), db: Session = Depends(get_db)):
    wf = workflow.get_workflow(db, admin.company_id, workflow_id)
    workflow.delete_workflow(db, wf)
    db.commit()

# ---- Employee: Submit & View ----

def _company_expense(db: Session, user: models.User, expense_id: int) -> models.Expense:
    exp = db.get(models.Expense, expense_id)
    if exp is None or exp.employee.company_id != user.company_id:
        raise NotFoundError("expense", expense_id)
    return exp

@app.post("/expenses", response_model=schemas.ExpenseOut)
def create_expense(payload: schemas.ExpenseCreate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    company = db.get(models.Company, user.company_id)
    conversion = convert(payload.amount, payload.currency_code, company.currency_code)
    exp = models.Expense(
        employee_id=user.id,
        amount=payload.amount,
        currency_code=payload.currency_code.upper(),
        normalized_amount=conversion.converted_amount,
        exchange_rate=conversion.rate,
        category=payload.category,
        description=payload.description,
        expense_date=payload.expense_date,
        receipt_url=payload.receipt_url,
        status=models.ExpenseStatus.draft,
    )
    db.add(exp)
    db.commit()
    db.refresh(exp)
    return exp

@app.get("/expenses/my", response_model=List[schemas.ExpenseOut])
def my_expenses(status: Optional[schemas.ExpenseStatus] = None, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    q = db.query(models.Expense).filter(models.Expense.employee_id == user.id)
    if status is not None:
        q = q.filter(models.Expense.status == models.ExpenseStatus(status.value))
    return q.order_by(models.Expense.created_at.desc(), models.Expense.id.desc()).all()

@app.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(expense_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    exp = db.get(models.Expense, expense_id)
    if exp is None or exp.employee_id != user.id:
        raise HTTPException(status_code=404, detail="Expense not found")
    if exp.status != models.ExpenseStatus.draft or lifecycle.is_effectively_pending(db, exp):
        raise HTTPException(status_code=409, detail="Only draft expenses that are not under review can be deleted")
    db.delete(exp)
    db.commit()

@app.post("/expenses/{expense_id}/submit", response_model=schemas.ExpenseOut)
def submit_expense(expense_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    exp = db.get(models.Expense, expense_id)
    if exp is None or exp.employee_id != user.id:
        raise HTTPException(status_code=404, detail="Expense not found")
    try:
        if not lifecycle.is_effectively_pending(db, exp):
            lifecycle.ensure_pending(db, exp)
            db.commit()
        approvals.ensure_approval_records(db, exp)
        db.commit()
    except ApprovalWorkflowError as exc:
        db.rollback()
        exc.action = "submit"
        raise
    db.refresh(exp)
    return exp

@app.get("/expenses/{expense_id}/approvals", response_model=List[schemas.ApprovalOut])
def list_expense_approvals(expense_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    # Visibility: employee or any approver/admin in same company
    exp = _company_expense(db, user, expense_id)
    return approvals.list_records(db, exp.id)

# ---- Approvals ----

@app.get("/approvals/pending", response_model=List[schemas.ExpenseOut])
def pending_for_me(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return list_pending_for(db, user)

@app.post("/approvals/{expense_id}/act", response_model=schemas.OutcomeOut)
def act_on_expense(expense_id: int, payload: schemas.DecisionRequest, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        _company_expense(db, user, expense_id)
    except NotFoundError as exc:
        exc.action = payload.action.value
        raise
    outcome = ApprovalOrchestrator(db).decide(expense_id, user, payload.action.value, payload.comments)
    return schemas.OutcomeOut(
        action=outcome.action.value,
        expense_id=outcome.expense_id,
        finalized=outcome.finalized,
        status=outcome.status.value,
        fallback_used=outcome.fallback_used,
    )

# ---- Dashboard ----

@app.get("/dashboard/stats", response_model=schemas.ExpenseStats)
def dashboard_stats(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    company = db.get(models.Company, user.company_id)
    q = db.query(
        models.Expense.status,
        func.count(models.Expense.id),
        func.sum(models.Expense.normalized_amount),
    )
    if user.role == models.Role.admin:
        scope = "company"
        q = q.join(models.User, models.Expense.employee_id == models.User.id).filter(models.User.company_id == user.company_id)
    else:
        scope, employee_ids = "own", [user.id]
        if user.role == models.Role.manager:
            reports = [uid for (uid,) in db.query(models.User.id).filter(models.User.manager_id == user.id)]
            if reports:
                scope, employee_ids = "team", reports
        q = q.filter(models.Expense.employee_id.in_(employee_ids))

    stats = schemas.ExpenseStats(scope=scope, currency_code=company.currency_code)
    for status, count, amount in q.group_by(models.Expense.status).all():
        amount = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
        setattr(stats, f"{status.value}_expenses", count)
        stats.total_expenses += count
        stats.total_amount += amount
        if status == models.ExpenseStatus.pending:
            stats.pending_amount = amount
    return stats
