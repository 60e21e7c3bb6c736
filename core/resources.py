# core/resources.py
"""Admin pages, declared once and shared by the admin API and the dashboard."""
from dataclasses import dataclass
from typing import Dict, List, Optional, Type

from pydantic import BaseModel

from core.crud import AdminCRUD
from core.data_client import (
    DataAccessClient, SITE_SETTINGS_TABLE, ABOUT_TABLE, CATEGORIES_TABLE,
    CLIENTS_TABLE, CLIENT_IMAGES_TABLE, NAVBAR_LINKS_TABLE,
)
from core.errors import NotFoundError
from core.forms import AdminForm, FieldSpec, FormResult, ImageField, RichTextField, SelectField, TextField
from core.images import ImageUploader, UploadedFile
from core.ledger import PendingEditLedger
from core.models import (
    AboutContent, Client, ClientImage, NavbarLink, PortfolioCategory, PortfolioCategorySlug, SiteSettings,
)
from core.repository import TableRepository

CATEGORY_OPTIONS = [slug.value for slug in PortfolioCategorySlug]
EMAIL_PATTERN = r"[^@\s]+@[^@\s]+\.[^@\s]+"
HREF_PATTERN = r"(/|#|https?://|mailto:|tel:)\S*"
URL_PATTERN = r"https?://\S+"


def _position() -> TextField:
    return TextField(name="position", label="Position", integer=True, max_length=6,
                     help_text="Lower numbers are shown first.")


@dataclass(frozen=True)
class AdminResource:
    name: str
    title: str
    table: str
    model: Type[BaseModel]
    fields: List[FieldSpec]
    order_by: Optional[str] = "position"
    singleton: bool = False
    folder: str = "uploads"

    def repository(self, db: DataAccessClient) -> TableRepository:
        return TableRepository(db, self.table, self.model, order_by=self.order_by)

    def store(self, db: DataAccessClient, ledger: Optional[PendingEditLedger] = None) -> AdminCRUD:
        return AdminCRUD(self.repository(db), ledger=ledger, allow_delete=not self.singleton)

    def form(self, store: AdminCRUD, uploader: Optional[ImageUploader] = None) -> AdminForm:
        return AdminForm(self.fields, store, uploader=uploader, folder=self.folder)

    async def submit(self, form: AdminForm, values: Dict, uploads: Optional[Dict[str, UploadedFile]] = None,
                     record_id: Optional[str] = None) -> FormResult:
        """Like `AdminForm.submit`, but singletons always update their one row."""
        if self.singleton and record_id is None:
            listed = await form.store.list()
            if not listed.ok:
                return FormResult(ok=False, values=dict(values), error=listed.error)
            if listed.data:
                record_id = getattr(listed.data[0], "id")
        return await form.submit(values, uploads=uploads, record_id=record_id)


RESOURCES: Dict[str, AdminResource] = {resource.name: resource for resource in [
    AdminResource(
        name="settings",
        title="Site Settings",
        table=SITE_SETTINGS_TABLE,
        model=SiteSettings,
        order_by=None,
        singleton=True,
        folder="settings",
        fields=[
            TextField(name="site_title", label="Site title", required=True, max_length=120),
            ImageField(name="hero_image", label="Hero image"),
            TextField(name="contact_email", label="Contact email", pattern=EMAIL_PATTERN,
                      pattern_message="Enter a valid email address."),
            TextField(name="contact_phone", label="Contact phone", max_length=40),
            TextField(name="instagram_url", label="Instagram URL", pattern=URL_PATTERN,
                      pattern_message="Enter a full http(s) URL."),
        ],
    ),
    AdminResource(
        name="about",
        title="About",
        table=ABOUT_TABLE,
        model=AboutContent,
        order_by=None,
        singleton=True,
        folder="about",
        fields=[
            TextField(name="heading", label="Heading", required=True, max_length=160),
            RichTextField(name="body", label="Text", required=True),
            ImageField(name="image", label="Portrait"),
        ],
    ),
    AdminResource(
        name="categories",
        title="Portfolio Categories",
        table=CATEGORIES_TABLE,
        model=PortfolioCategory,
        folder="categories",
        fields=[
            SelectField(name="slug", label="Category", required=True, options=CATEGORY_OPTIONS),
            TextField(name="title", label="Title", required=True, max_length=120),
            RichTextField(name="description", label="Description", max_length=4000),
            ImageField(name="cover_image", label="Cover image"),
            _position(),
        ],
    ),
    AdminResource(
        name="clients",
        title="Clients",
        table=CLIENTS_TABLE,
        model=Client,
        folder="clients",
        fields=[
            SelectField(name="category", label="Category", required=True, options=CATEGORY_OPTIONS),
            TextField(name="name", label="Client name", required=True, max_length=160),
            RichTextField(name="description", label="Project description", max_length=8000),
            ImageField(name="cover_image", label="Cover image"),
            _position(),
        ],
    ),
    AdminResource(
        name="client_images",
        title="Client Galleries",
        table=CLIENT_IMAGES_TABLE,
        model=ClientImage,
        folder="galleries",
        fields=[
            SelectField(name="client_id", label="Client", required=True, options_from="clients"),
            ImageField(name="image_url", label="Image", required=True),
            TextField(name="caption", label="Caption", max_length=240),
            _position(),
        ],
    ),
    AdminResource(
        name="navbar_links",
        title="Navigation",
        table=NAVBAR_LINKS_TABLE,
        model=NavbarLink,
        folder="navigation",
        fields=[
            TextField(name="label", label="Label", required=True, max_length=60),
            TextField(name="href", label="Link", required=True, max_length=500, pattern=HREF_PATTERN,
                      pattern_message="Use a path (/about), an anchor (#contact) or a full URL."),
            _position(),
        ],
    ),
]}


async def populate_options(form: AdminForm, db: DataAccessClient) -> None:
    """Fills runtime select options (ids of rows in another resource) concurrently."""
    dynamic = [spec for spec in form.fields if spec.kind == "select" and spec.options_from]
    if not dynamic:
        return
    results = await db.gather_settled(*(RESOURCES[spec.options_from].repository(db).fetch_all() for spec in dynamic))
    for spec, settled in zip(dynamic, results):
        if settled.ok:
            form.set_options(spec.name, [getattr(row, "id") for row in settled.value])


def get_resource(name: str) -> AdminResource:
    try:
        return RESOURCES[name]
    except KeyError:
        raise NotFoundError(f"Unknown admin resource '{name}'.", user_message="This admin page does not exist.") from None
