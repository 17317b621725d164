import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from categories import categories_for, category_style
from config import get_settings
from database import SessionLocal, init_db
from models import TransactionType
from recurrence import ValidationError, local_today, upcoming_due_dates
from scheduler import SchedulerManager
from schemas import (
    CategoryOut,
    MaterializeRequest,
    RecurringTemplateIn,
    RecurringTemplateOut,
    TransactionOut,
)
from services import RecurringTemplateService, TransactionService, to_template


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Recurring Transactions", version=APP_VERSION)
scheduler_manager = SchedulerManager()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    init_db()
    if get_settings().scheduler_enabled:
        scheduler_manager.start()
    else:
        logging.info("Scheduler disabled by configuration")


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(type: TransactionType = Query(TransactionType.expense)):
    return [
        CategoryOut(name=name, **vars(category_style(name)))
        for name in categories_for(type)
    ]


@app.get("/templates", response_model=list[RecurringTemplateOut])
def list_templates(active_only: bool = False, db: Session = Depends(get_db)):
    return RecurringTemplateService(db).list(active_only=active_only)


@app.post("/templates", response_model=RecurringTemplateOut, status_code=201)
def create_template(data: RecurringTemplateIn, db: Session = Depends(get_db)):
    try:
        return RecurringTemplateService(db).create(data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/templates/summary")
def templates_summary(db: Session = Depends(get_db)):
    return RecurringTemplateService(db).summary()


@app.get("/templates/{template_id}", response_model=RecurringTemplateOut)
def get_template(template_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringTemplateService(db).get(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/templates/{template_id}/occurrences", response_model=list[date])
def template_occurrences(
    template_id: int,
    count: int = Query(6, ge=1, le=60),
    db: Session = Depends(get_db),
):
    try:
        record = RecurringTemplateService(db).get(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return upcoming_due_dates(to_template(record), count)


@app.post("/templates/{template_id}/materialize", response_model=list[TransactionOut])
def materialize_template(
    template_id: int,
    payload: Optional[MaterializeRequest] = None,
    db: Session = Depends(get_db),
):
    as_of = (payload.as_of if payload else None) or local_today()
    try:
        created = RecurringTemplateService(db).materialize_due(template_id, as_of)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logging.info(
        f"materialize_request: template_id={template_id} as_of={as_of} "
        f"created={len(created)}"
    )
    return created


@app.post("/templates/{template_id}/toggle", response_model=RecurringTemplateOut)
def toggle_template(template_id: int, db: Session = Depends(get_db)):
    service = RecurringTemplateService(db)
    try:
        record = service.get(template_id)
        return service.set_active(template_id, not record.active)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/templates/{template_id}", status_code=204)
def delete_template(template_id: int, db: Session = Depends(get_db)):
    try:
        RecurringTemplateService(db).delete(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db).list(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/transactions/export")
def export_transactions_csv(
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        content = TransactionService(db).export_csv(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="transactions.csv"'},
    )
