from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Any
from enum import Enum
import datetime

# --- Enumerations ---

class PortfolioCategorySlug(str, Enum):
    """The fixed set of portfolio categories shown on the public site."""
    BUSINESSES = "businesses"
    EVENTS = "events"
    PEOPLE = "people"
    RESTAURANTS = "restaurants"

# --- Core Data Models ---

class SiteSettings(BaseModel):
    """Singleton row holding site-wide settings."""
    id: str
    site_title: str = ""
    hero_image: Optional[str] = Field(None, description="Public URL or (pre-migration) inline-encoded image")
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    instagram_url: Optional[str] = None
    updated_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True

class AboutContent(BaseModel):
    """Singleton row holding the about section."""
    id: str
    heading: str = ""
    body: str = ""
    image: Optional[str] = None
    updated_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True

class ClientImage(BaseModel):
    """A single gallery image belonging to a client."""
    id: str
    client_id: str
    image_url: str = Field(..., description="Public URL, or inline-encoded payload before migration")
    caption: Optional[str] = None
    position: int = 0
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True

class PortfolioCategory(BaseModel):
    id: str
    slug: PortfolioCategorySlug
    title: str
    description: Optional[str] = None
    cover_image: Optional[str] = None
    position: int = 0

    class Config:
        from_attributes = True

class Client(BaseModel):
    """A client project; belongs to exactly one portfolio category."""
    id: str
    category: PortfolioCategorySlug
    name: str
    description: Optional[str] = None
    cover_image: Optional[str] = None
    position: int = 0
    created_at: Optional[datetime.datetime] = None
    # Populated only by embedded selects on the public site
    client_images: List[ClientImage] = Field(default_factory=list)

    class Config:
        from_attributes = True

    @field_validator("client_images", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []

class NavbarLink(BaseModel):
    id: str
    label: str
    href: str
    position: int = 0

    class Config:
        from_attributes = True

# --- Service Request/Response Models ---

class ContactRequest(BaseModel):
    """Contact form submission from the public site."""
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = Field(None, max_length=40)
    message: str = Field(..., min_length=1, max_length=5000)

class ImageRefOut(BaseModel):
    """Displayable form of a stored image reference."""
    kind: str = Field(description="'url', 'inline' or 'empty'")
    src: Optional[str] = None

class UploadResult(BaseModel):
    """Result of a successful image upload."""
    url: str
    key: str
    content_type: str
    size: int
    converted: bool = False

class ApiResponse(BaseModel):
    """Standard response wrapper for the HTTP services."""
    status: str = Field(description="'success' or 'error'")
    data: Any | None = Field(default=None, description="The primary data payload (depends on the endpoint)")
    message: Optional[str] = Field(default=None, description="Optional status message or error details")
