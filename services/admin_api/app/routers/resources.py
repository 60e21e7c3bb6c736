# services/admin_api/app/routers/resources.py
from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from typing import Any, Dict, Optional
import logging

from core.auth import require_admin
from core.crud import AdminCRUD
from core.data_client import DataAccessClient
from core.errors import AdminError
from core.forms import FormResult
from core.ledger import PendingEditLedger
from core.models import ApiResponse
from core.resources import RESOURCES, AdminResource, get_resource, populate_options

logger = logging.getLogger("PCMS_Core").getChild("AdminAPI").getChild("ResourceRouter")

router = APIRouter(dependencies=[Depends(require_admin)])


def get_db(request: Request) -> DataAccessClient:
    """Dependency function to get the data-access client from app state."""
    db = getattr(request.app.state, 'db', None)
    if not db:
        logger.error("Data client dependency not met: Client not available in application state.")
        raise HTTPException(status_code=503, detail="Admin API internal error: backend client not ready")
    return db


def open_store(request: Request, admin_resource: AdminResource, db: DataAccessClient) -> AdminCRUD:
    """A per-request store whose edits queue behind other requests touching the same row."""
    ledgers: Dict[str, PendingEditLedger] = request.app.state.ledgers
    ledger = ledgers.setdefault(admin_resource.name, PendingEditLedger())
    return admin_resource.store(db, ledger=ledger)


def resolve_resource(resource: str) -> AdminResource:
    try:
        return get_resource(resource)
    except AdminError as e:
        raise HTTPException(status_code=e.status_code, detail=e.user_message)


def _raise_for(error: AdminError, values: Optional[Dict[str, Any]] = None):
    detail = error.to_dict()
    if values is not None:
        detail["values"] = values
    raise HTTPException(status_code=error.status_code, detail=detail)


def _raise_for_form(result: FormResult):
    detail = result.error.to_dict() if result.error else {"error": "ValidationFailed"}
    detail["field_errors"] = result.field_errors
    detail["values"] = result.values
    status_code = result.error.status_code if result.error else 422
    raise HTTPException(status_code=status_code, detail=detail)


@router.get("/resources", response_model=ApiResponse)
async def list_resources(db: DataAccessClient = Depends(get_db)):
    """Lists every admin page with its empty form descriptor."""
    pages = []
    for resource in RESOURCES.values():
        form = resource.form(resource.store(db))
        pages.append({
            "name": resource.name,
            "title": resource.title,
            "singleton": resource.singleton,
            "fields": [field.model_dump() for field in form.render()],
        })
    return ApiResponse(status="success", data=pages)


@router.get("/{resource}/form", response_model=ApiResponse)
async def get_form(request: Request, resource: str, id: Optional[str] = None, db: DataAccessClient = Depends(get_db)):
    """Rendered form fields, pre-filled from an existing row when `id` is given."""
    admin_resource = resolve_resource(resource)
    form = admin_resource.form(open_store(request, admin_resource, db))
    await populate_options(form, db)
    values = None
    if id:
        try:
            record = await admin_resource.repository(db).fetch_one(id)
        except AdminError as e:
            _raise_for(e)
        if record is None:
            raise HTTPException(status_code=404, detail=f"{admin_resource.title} entry not found.")
        values = form.initial_values(record)
    return ApiResponse(status="success", data=[field.model_dump() for field in form.render(values)])


@router.get("/{resource}", response_model=ApiResponse)
async def list_rows(request: Request, resource: str, db: DataAccessClient = Depends(get_db)):
    admin_resource = resolve_resource(resource)
    store = open_store(request, admin_resource, db)
    result = await store.list()
    if not result.ok:
        _raise_for(result.error)
    return ApiResponse(status="success", data=store.snapshot())


@router.post("/{resource}", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def create_row(request: Request, resource: str, response: Response, values: Dict[str, Any] = Body(...),
                     db: DataAccessClient = Depends(get_db)):
    """Creates a row; singleton pages update their existing row instead."""
    admin_resource = resolve_resource(resource)
    form = admin_resource.form(open_store(request, admin_resource, db))
    await populate_options(form, db)
    result = await admin_resource.submit(form, values)
    if not result.ok:
        _raise_for_form(result)
    if admin_resource.singleton:
        response.status_code = status.HTTP_200_OK
    logger.info(f"[{admin_resource.table}:{getattr(result.record, 'id', '?')}] Saved via admin API.")
    return ApiResponse(status="success", data=result.record.model_dump(mode="json"), message="Saved.")


@router.patch("/{resource}/{record_id}", response_model=ApiResponse)
async def update_row(request: Request, resource: str, record_id: str, values: Dict[str, Any] = Body(...),
                     db: DataAccessClient = Depends(get_db)):
    admin_resource = resolve_resource(resource)
    form = admin_resource.form(open_store(request, admin_resource, db))
    await populate_options(form, db)
    result = await admin_resource.submit(form, values, record_id=record_id)
    if not result.ok:
        _raise_for_form(result)
    return ApiResponse(status="success", data=result.record.model_dump(mode="json"), message="Saved.")


@router.delete("/{resource}/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_row(request: Request, resource: str, record_id: str, db: DataAccessClient = Depends(get_db)):
    admin_resource = resolve_resource(resource)
    if admin_resource.singleton:
        raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
                            detail=f"{admin_resource.title} cannot be deleted.")
    store = open_store(request, admin_resource, db)
    result = await store.delete(record_id)
    if not result.ok:
        _raise_for(result.error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
