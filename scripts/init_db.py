import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gardenia import models  # noqa: E402,F401
from gardenia.authn import get_user_by_email, register_user  # noqa: E402
from gardenia.db import Base, SessionLocal, engine  # noqa: E402
from gardenia.services import create_clinic  # noqa: E402


def bootstrap(db, *, admin_email: str, admin_name: str, admin_password: str, clinic_name: str | None) -> dict:
    result = {"admin_created": False, "clinic_id": None}
    admin = get_user_by_email(db, admin_email)
    if admin is None:
        admin = register_user(db, name=admin_name, email=admin_email, password=admin_password, role="SUPER_ADMIN")
        result["admin_created"] = True
    elif admin.role != "SUPER_ADMIN":
        admin.role = "SUPER_ADMIN"
        db.commit()
    result["admin_id"] = admin.id

    if clinic_name:
        clinic = create_clinic(db, admin, name=clinic_name)
        result["clinic_id"] = clinic.id
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Gardenia database bootstrap")
    parser.add_argument("--admin-email", required=True, help="Super admin e-mail")
    parser.add_argument("--admin-name", default="Administrator", help="Super admin display name")
    parser.add_argument(
        "--admin-password",
        default=os.getenv("INIT_ADMIN_PASSWORD", ""),
        help="Super admin password (or INIT_ADMIN_PASSWORD)",
    )
    parser.add_argument("--clinic-name", default=None, help="Create a first clinic owned by the admin")
    args = parser.parse_args()

    if not args.admin_password:
        parser.error("--admin-password or INIT_ADMIN_PASSWORD is required")

    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        try:
            result = bootstrap(
                db,
                admin_email=args.admin_email,
                admin_name=args.admin_name,
                admin_password=args.admin_password,
                clinic_name=args.clinic_name,
            )
        except ValueError as exc:
            print(json.dumps({"ok": False, "error": str(exc)}))
            return 1
    print(json.dumps({"ok": True, **result}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
