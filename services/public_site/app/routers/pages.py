# services/public_site/app/routers/pages.py
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from typing import Any, Dict, Iterable, List, Optional
import logging

from core.data_client import (
    DataAccessClient, SITE_SETTINGS_TABLE, ABOUT_TABLE, CATEGORIES_TABLE, CLIENTS_TABLE, NAVBAR_LINKS_TABLE,
)
from core.images import describe_image_ref
from core.models import AboutContent, ApiResponse, Client, NavbarLink, PortfolioCategory, PortfolioCategorySlug, SiteSettings
from core.repository import TableRepository

logger = logging.getLogger("PCMS_Core").getChild("PublicSite").getChild("PageRouter")

router = APIRouter()

# Columns holding image references, per model
IMAGE_FIELDS = {
    SiteSettings: ("hero_image",),
    AboutContent: ("image",),
    PortfolioCategory: ("cover_image",),
    Client: ("cover_image",),
}


def get_db(request: Request) -> DataAccessClient:
    db = getattr(request.app.state, 'db', None)
    if not db:
        logger.error("Data client dependency not met: Client not available in application state.")
        raise HTTPException(status_code=503, detail="Site data is temporarily unavailable")
    return db


def present(row: BaseModel) -> Dict[str, Any]:
    """JSON view of a row with every image reference resolved to a displayable source."""
    data = row.model_dump(mode="json")
    for name in IMAGE_FIELDS.get(type(row), ()):
        data[name] = describe_image_ref(data.get(name)).model_dump()
    if isinstance(row, Client):
        images = sorted(row.client_images, key=lambda image: image.position)
        data["client_images"] = [
            {**image.model_dump(mode="json"), "image_url": describe_image_ref(image.image_url).model_dump()}
            for image in images
        ]
    return data


def _first(rows: Iterable[BaseModel]) -> Optional[Dict[str, Any]]:
    for row in rows:
        return present(row)
    return None


@router.get("/site", response_model=ApiResponse)
async def get_site(db: DataAccessClient = Depends(get_db)):
    """Everything the shared page chrome needs, loaded concurrently.

    A section that fails to load is returned as null and named in `errors`.
    """
    sections = {
        "settings": (TableRepository(db, SITE_SETTINGS_TABLE, SiteSettings, order_by=None), _first),
        "about": (TableRepository(db, ABOUT_TABLE, AboutContent, order_by=None), _first),
        "categories": (TableRepository(db, CATEGORIES_TABLE, PortfolioCategory), lambda rows: [present(r) for r in rows]),
        "navbar": (TableRepository(db, NAVBAR_LINKS_TABLE, NavbarLink), lambda rows: [present(r) for r in rows]),
    }
    results = await db.gather_settled(*(repository.fetch_all() for repository, _ in sections.values()))

    data: Dict[str, Any] = {}
    errors: List[Dict[str, Any]] = []
    for (name, (_, shape)), settled in zip(sections.items(), results):
        if settled.ok:
            data[name] = shape(settled.value)
            continue
        data[name] = None
        logger.warning(f"Section '{name}' failed to load: {settled.error}")
        errors.append({"section": name, **settled.error.to_dict()})
    data["errors"] = errors
    message = None if not errors else f"{len(errors)} section(s) could not be loaded."
    return ApiResponse(status="success", data=data, message=message)


@router.get("/portfolio/{slug}", response_model=ApiResponse)
async def get_portfolio(slug: str, db: DataAccessClient = Depends(get_db)):
    """One category with its clients and their gallery images."""
    try:
        slug = PortfolioCategorySlug(slug).value
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown portfolio category '{slug}'.")

    categories = TableRepository(db, CATEGORIES_TABLE, PortfolioCategory)
    # Clients and their images come back from a single embedded select
    clients = TableRepository(db, CLIENTS_TABLE, Client, select="*, client_images(*)")
    category_result, clients_result = await db.gather_settled(
        categories.fetch_where("slug", slug),
        clients.fetch_where("category", slug),
    )
    for settled in (category_result, clients_result):
        if not settled.ok:
            logger.error(f"Portfolio '{slug}' failed to load: {settled.error}")
            raise HTTPException(status_code=settled.error.status_code, detail=settled.error.to_dict())
    if not category_result.value:
        raise HTTPException(status_code=404, detail=f"Portfolio category '{slug}' has no content yet.")

    return ApiResponse(status="success", data={
        "category": present(category_result.value[0]),
        "clients": [present(client) for client in clients_result.value],
    })
