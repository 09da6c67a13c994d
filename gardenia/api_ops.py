from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .api import _not_found, http_error
from .db import get_db
from .dependencies import ClinicAccess, get_current_user, require_clinic_member, require_permission
from .inventory import adjust_stock, create_product, delete_product, get_product, list_products, update_product
from .models import InventoryProduct, Task, User
from .schemas import (
    InventoryProductCreate,
    InventoryProductOut,
    InventoryProductUpdate,
    StockAdjustIn,
    TaskCreate,
    TaskOut,
    TaskUpdate,
)
from .tasks import create_task, delete_task, get_task, list_tasks, list_tasks_for_user, update_task

router = APIRouter(prefix="/api", tags=["operations"])


def _to_product_out(p: InventoryProduct) -> InventoryProductOut:
    return InventoryProductOut(
        id=p.id,
        clinic_id=p.clinic_id,
        name=p.name,
        category=p.category,
        quantity=p.quantity,
        price=float(p.price),
        low_stock_threshold=p.low_stock_threshold,
        status=p.status,
        created_by=p.created_by,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


def _to_task_out(t: Task) -> TaskOut:
    return TaskOut(
        id=t.id,
        clinic_id=t.clinic_id,
        title=t.title,
        description=t.description,
        status=t.status,
        priority=t.priority,
        due_date=t.due_date,
        assigned_to=t.assigned_to,
        completed_at=t.completed_at,
        created_by=t.created_by,
        created_at=t.created_at,
        updated_at=t.updated_at,
    )


# --- inventory -------------------------------------------------------------


@router.post(
    "/clinics/{clinic_id}/inventory",
    response_model=InventoryProductOut,
    status_code=status.HTTP_201_CREATED,
)
def add_product(
    clinic_id: int,
    payload: InventoryProductCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("inventory", "create")),
):
    try:
        row = create_product(db, clinic_id, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_product_out(row)


@router.get("/clinics/{clinic_id}/inventory", response_model=List[InventoryProductOut])
def get_products(
    clinic_id: int,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    category: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None, max_length=120),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("inventory", "view")),
):
    try:
        rows = list_products(db, clinic_id, status=status_filter, category=category, q=q)
    except ValueError as exc:
        raise http_error(exc)
    return [_to_product_out(r) for r in rows]


@router.get("/clinics/{clinic_id}/inventory/{product_id}", response_model=InventoryProductOut)
def get_product_detail(
    clinic_id: int,
    product_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("inventory", "view")),
):
    row = get_product(db, clinic_id, product_id)
    if not row:
        raise _not_found("Product")
    return _to_product_out(row)


@router.patch("/clinics/{clinic_id}/inventory/{product_id}", response_model=InventoryProductOut)
def patch_product(
    clinic_id: int,
    product_id: int,
    payload: InventoryProductUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("inventory", "edit")),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        row = update_product(db, clinic_id, product_id, fields)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Product")
    return _to_product_out(row)


@router.post("/clinics/{clinic_id}/inventory/{product_id}/adjust", response_model=InventoryProductOut)
def adjust_product_stock(
    clinic_id: int,
    product_id: int,
    payload: StockAdjustIn,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("inventory", "edit")),
):
    try:
        row = adjust_stock(db, clinic_id, product_id, payload.delta, actor=access.user, reason=payload.reason)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Product")
    return _to_product_out(row)


@router.delete("/clinics/{clinic_id}/inventory/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_product(
    clinic_id: int,
    product_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("inventory", "delete")),
):
    if not delete_product(db, clinic_id, product_id):
        raise _not_found("Product")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- tasks -----------------------------------------------------------------


@router.post("/clinics/{clinic_id}/tasks", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
def add_task(
    clinic_id: int,
    payload: TaskCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_member),
):
    try:
        row = create_task(db, clinic_id, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_task_out(row)


@router.get("/clinics/{clinic_id}/tasks", response_model=List[TaskOut])
def get_tasks(
    clinic_id: int,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    assigned_to: Optional[int] = Query(default=None),
    open_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_member),
):
    try:
        rows = list_tasks(db, clinic_id, status=status_filter, assigned_to=assigned_to, open_only=open_only)
    except ValueError as exc:
        raise http_error(exc)
    return [_to_task_out(r) for r in rows]


@router.get("/me/tasks", response_model=List[TaskOut])
def get_my_tasks(
    include_closed: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return [_to_task_out(r) for r in list_tasks_for_user(db, user.id, open_only=not include_closed)]


@router.get("/clinics/{clinic_id}/tasks/{task_id}", response_model=TaskOut)
def get_task_detail(
    clinic_id: int,
    task_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_member),
):
    row = get_task(db, clinic_id, task_id)
    if not row:
        raise _not_found("Task")
    return _to_task_out(row)


@router.patch("/clinics/{clinic_id}/tasks/{task_id}", response_model=TaskOut)
def patch_task(
    clinic_id: int,
    task_id: int,
    payload: TaskUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_member),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        row = update_task(db, clinic_id, task_id, fields)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Task")
    return _to_task_out(row)


@router.delete("/clinics/{clinic_id}/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_task(
    clinic_id: int,
    task_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_member),
):
    if not delete_task(db, clinic_id, task_id):
        raise _not_found("Task")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
