import csv
from io import StringIO

from sqlalchemy.orm import Session

from .services import list_appointments


def export_appointments_csv(db: Session, clinic_id: int, start_dt, end_dt) -> str:
    out = StringIO()
    w = csv.writer(out)
    w.writerow(
        ["id", "start_time", "end_time", "client", "professional", "service", "price", "duration_min", "status"]
    )

    for a in list_appointments(db, clinic_id, start=start_dt, end=end_dt):
        w.writerow(
            [
                a.id,
                a.start_time.isoformat(),
                a.end_time.isoformat(),
                a.client.name,
                a.professional.user.name,
                a.service.name,
                float(a.service.price),
                int((a.end_time - a.start_time).total_seconds() // 60),
                a.status,
            ]
        )

    return out.getvalue()
