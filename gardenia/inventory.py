import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .audit import write_audit_log
from .models import InventoryProduct, User, utc_now_naive
from .payments import money
from .services import _clean_required

logger = structlog.get_logger("gardenia.inventory")

STOCK_STATUSES = ("in_stock", "low_stock", "out_of_stock")
DEFAULT_LOW_STOCK_THRESHOLD = 5


def stock_status(quantity: int, low_stock_threshold: int) -> str:
    if quantity <= 0:
        return "out_of_stock"
    if low_stock_threshold and quantity <= low_stock_threshold:
        return "low_stock"
    return "in_stock"


def _non_negative_int(value, field: str) -> int:
    number = int(value)
    if number < 0:
        raise ValueError(f"{field} must not be negative")
    return number


def _price(value):
    amount = money(value)
    if amount < 0:
        raise ValueError("price must not be negative")
    return amount


def create_product(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    name: str,
    category: str,
    quantity: int = 0,
    price=0,
    low_stock_threshold: int | None = None,
) -> InventoryProduct:
    qty = _non_negative_int(quantity, "quantity")
    threshold = _non_negative_int(
        DEFAULT_LOW_STOCK_THRESHOLD if low_stock_threshold is None else low_stock_threshold,
        "low_stock_threshold",
    )
    now = utc_now_naive()
    row = InventoryProduct(
        clinic_id=clinic_id,
        name=_clean_required(name, "name")[:160],
        category=_clean_required(category, "category")[:80].lower(),
        quantity=qty,
        price=_price(price),
        low_stock_threshold=threshold,
        status=stock_status(qty, threshold),
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("inventory_product_created", clinic_id=clinic_id, product_id=row.id, status=row.status)
    return row


def get_product(db: Session, clinic_id: int, product_id: int) -> InventoryProduct | None:
    return db.execute(
        select(InventoryProduct).where(InventoryProduct.clinic_id == clinic_id, InventoryProduct.id == product_id)
    ).scalar_one_or_none()


def list_products(
    db: Session,
    clinic_id: int,
    *,
    status: str | None = None,
    category: str | None = None,
    q: str | None = None,
) -> list[InventoryProduct]:
    query = db.query(InventoryProduct).filter(InventoryProduct.clinic_id == clinic_id)
    if status:
        value = status.strip().lower()
        if value not in STOCK_STATUSES:
            raise ValueError("Invalid stock status")
        query = query.filter(InventoryProduct.status == value)
    if category:
        query = query.filter(InventoryProduct.category == category.strip().lower())
    term = (q or "").strip().lower()
    if term:
        query = query.filter(func.lower(InventoryProduct.name).like(f"%{term}%"))
    return query.order_by(InventoryProduct.name.asc(), InventoryProduct.id.asc()).all()


def update_product(db: Session, clinic_id: int, product_id: int, fields: dict) -> InventoryProduct | None:
    row = get_product(db, clinic_id, product_id)
    if row is None:
        return None
    if fields.get("name") is not None:
        row.name = _clean_required(fields["name"], "name")[:160]
    if fields.get("category") is not None:
        row.category = _clean_required(fields["category"], "category")[:80].lower()
    if fields.get("quantity") is not None:
        row.quantity = _non_negative_int(fields["quantity"], "quantity")
    if fields.get("price") is not None:
        row.price = _price(fields["price"])
    if fields.get("low_stock_threshold") is not None:
        row.low_stock_threshold = _non_negative_int(fields["low_stock_threshold"], "low_stock_threshold")
    row.status = stock_status(row.quantity, row.low_stock_threshold)
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def adjust_stock(db: Session, clinic_id: int, product_id: int, delta: int, *, actor: User, reason: str | None = None):
    row = get_product(db, clinic_id, product_id)
    if row is None:
        return None
    if int(delta) == 0:
        raise ValueError("delta must not be zero")
    new_quantity = int(row.quantity) + int(delta)
    if new_quantity < 0:
        raise ValueError(f"Not enough stock: {row.quantity} available")
    previous_status = row.status
    row.quantity = new_quantity
    row.status = stock_status(new_quantity, row.low_stock_threshold)
    row.updated_at = utc_now_naive()
    write_audit_log(
        db,
        clinic_id,
        "inventory.adjusted",
        "inventory_product",
        row.id,
        actor=actor,
        payload={"delta": int(delta), "quantity": new_quantity, "reason": (reason or "").strip() or None},
        commit=False,
    )
    db.commit()
    db.refresh(row)
    if row.status != previous_status and row.status != "in_stock":
        logger.warning("inventory_stock_low", clinic_id=clinic_id, product_id=row.id, status=row.status)
    return row


def delete_product(db: Session, clinic_id: int, product_id: int) -> bool:
    row = get_product(db, clinic_id, product_id)
    if row is None:
        return False
    db.delete(row)
    db.commit()
    logger.info("inventory_product_deleted", clinic_id=clinic_id, product_id=product_id)
    return True
