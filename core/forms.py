# core/forms.py
"""
Field-descriptor driven admin forms.

Each admin page declares an ordered list of field specs (a tagged variant on
`kind`: text | image | select | richtext). `AdminForm` renders them into
`RenderedField` descriptors that a UI turns into inputs, validates submitted
values, uploads selected images and persists through an `AdminCRUD` store.
"""
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from core.config import logger as core_logger
from core.crud import AdminCRUD
from core.errors import AdminError, UploadError, ValidationFailed
from core.images import ImageUploader, UploadedFile, describe_image_ref, is_inline_image, is_url
from core.models import ImageRefOut, UploadResult

logger = core_logger.getChild("Forms")

# --- Field Specs ---

class BaseField(BaseModel):
    name: str
    label: str
    required: bool = False
    help_text: Optional[str] = None

class TextField(BaseField):
    kind: Literal["text"] = "text"
    max_length: Optional[int] = 255
    pattern: Optional[str] = None
    pattern_message: str = "Invalid format."
    integer: bool = False

class ImageField(BaseField):
    kind: Literal["image"] = "image"

class SelectField(BaseField):
    kind: Literal["select"] = "select"
    options: List[str] = Field(default_factory=list)
    options_from: Optional[str] = Field(None, description="Admin resource whose ids populate the options at runtime")

class RichTextField(BaseField):
    kind: Literal["richtext"] = "richtext"
    max_length: Optional[int] = 20000

FieldSpec = Annotated[Union[TextField, ImageField, SelectField, RichTextField], Field(discriminator="kind")]

INPUT_TYPES = {"text": "text", "image": "file", "select": "select", "richtext": "textarea"}

class RenderedField(BaseModel):
    """Everything a UI needs to draw one input."""
    name: str
    label: str
    kind: str
    input_type: str
    required: bool
    value: Any = None
    options: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    help_text: Optional[str] = None
    preview: Optional[ImageRefOut] = None


@dataclass
class FormResult:
    ok: bool
    values: Dict[str, Any]
    record: Optional[BaseModel] = None
    field_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[AdminError] = None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class AdminForm:

    def __init__(self, fields: List[FieldSpec], store: AdminCRUD, uploader: Optional[ImageUploader] = None,
                 folder: str = "uploads"):
        self.fields = list(fields)
        self.store = store
        self.uploader = uploader
        self.folder = folder
        self._options: Dict[str, List[str]] = {}

    def field(self, name: str) -> Optional[FieldSpec]:
        return next((spec for spec in self.fields if spec.name == name), None)

    def set_options(self, name: str, options: List[str]) -> None:
        """Supplies runtime options for a select field (e.g. existing client ids)."""
        self._options[name] = list(options)

    def options_for(self, spec: FieldSpec) -> List[str]:
        if spec.kind != "select":
            return []
        return self._options.get(spec.name) or list(spec.options)

    def initial_values(self, record: Optional[BaseModel] = None) -> Dict[str, Any]:
        data = record.model_dump(mode="json") if record is not None else {}
        return {spec.name: data.get(spec.name) for spec in self.fields}

    # --- Rendering ---

    def render(self, values: Optional[Dict[str, Any]] = None, errors: Optional[Dict[str, str]] = None) -> List[RenderedField]:
        values = values or {}
        errors = errors or {}
        rendered = []
        for spec in self.fields:
            value = values.get(spec.name)
            rendered.append(RenderedField(
                name=spec.name,
                label=spec.label,
                kind=spec.kind,
                input_type=INPUT_TYPES[spec.kind],
                required=spec.required,
                value=value,
                options=self.options_for(spec),
                error=errors.get(spec.name),
                help_text=spec.help_text,
                preview=describe_image_ref(value) if spec.kind == "image" else None,
            ))
        return rendered

    # --- Validation ---

    def _check(self, spec: FieldSpec, value: Any) -> Optional[str]:
        if spec.kind in ("text", "richtext"):
            text = str(value).strip()
            if spec.max_length and len(text) > spec.max_length:
                return f"{spec.label} must be at most {spec.max_length} characters."
            if spec.kind == "text":
                if spec.integer and not (isinstance(value, int) or text.isdigit()):
                    return f"{spec.label} must be a whole number."
                if spec.pattern and not re.fullmatch(spec.pattern, text):
                    return f"{spec.label}: {spec.pattern_message}"
        elif spec.kind == "select":
            options = self.options_for(spec)
            if options and str(value) not in options:
                return f"{spec.label} must be one of: {', '.join(options)}."
        elif spec.kind == "image":
            if not (is_url(str(value)) or is_inline_image(str(value))):
                return f"{spec.label} must be an uploaded image."
        return None

    def validate(self, values: Dict[str, Any], uploads: Optional[Dict[str, UploadedFile]] = None,
                 partial: bool = False) -> Dict[str, str]:
        """Returns {field name: message} for every failing field."""
        uploads = uploads or {}
        errors: Dict[str, str] = {}
        for name in uploads:
            spec = self.field(name)
            if spec is None or spec.kind != "image":
                errors[name] = "Files can only be attached to image fields."
        for spec in self.fields:
            if partial and spec.name not in values and spec.name not in uploads:
                continue
            if spec.name in uploads:
                continue
            value = values.get(spec.name)
            if _is_empty(value):
                if spec.required:
                    errors[spec.name] = f"{spec.label} is required."
                continue
            message = self._check(spec, value)
            if message:
                errors[spec.name] = message
        return errors

    def clean(self, values: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for spec in self.fields:
            if partial and spec.name not in values:
                continue
            value = values.get(spec.name)
            if isinstance(value, str):
                value = value.strip()
            if _is_empty(value):
                # New rows fall back to column defaults; patches clear the column
                if not partial:
                    continue
                value = None
            elif spec.kind == "text" and spec.integer:
                value = int(value)
            cleaned[spec.name] = value
        return cleaned

    # --- Submission ---

    async def _discard(self, uploaded: List[UploadResult]) -> None:
        for result in uploaded:
            await self.uploader.discard(result.key)

    async def submit(self, values: Dict[str, Any], uploads: Optional[Dict[str, UploadedFile]] = None,
                     record_id: Optional[str] = None) -> FormResult:
        """
        Validates and persists a submission.

        Creates a record when `record_id` is None, otherwise patches the fields
        present in `values`. On any failure the returned result keeps the
        submitted values untouched so the form can be shown again as entered.
        """
        values = dict(values)
        uploads = {name: file for name, file in (uploads or {}).items() if file is not None}
        partial = record_id is not None

        field_errors = self.validate(values, uploads, partial=partial)
        if field_errors:
            logger.info(f"[{self.store.table}] Submission rejected, invalid fields: {sorted(field_errors)}")
            return FormResult(ok=False, values=values, field_errors=field_errors,
                              error=ValidationFailed(field_errors=field_errors))

        cleaned = self.clean(values, partial=partial)
        uploaded: List[UploadResult] = []
        for name, file in uploads.items():
            if self.uploader is None:
                error = UploadError("No uploader configured for this form.")
                return FormResult(ok=False, values=values, field_errors={name: error.user_message}, error=error)
            try:
                result = await self.uploader.upload(file, folder=self.folder)
            except AdminError as e:
                await self._discard(uploaded)
                return FormResult(ok=False, values=values, field_errors={name: e.user_message}, error=e)
            uploaded.append(result)
            cleaned[name] = result.url

        if record_id is None:
            outcome = await self.store.create(cleaned)
        else:
            outcome = await self.store.update(record_id, cleaned)

        if not outcome.ok:
            await self._discard(uploaded)
            return FormResult(ok=False, values=values, error=outcome.error,
                              field_errors=getattr(outcome.error, "field_errors", {}))
        return FormResult(ok=True, values=self.initial_values(outcome.data), record=outcome.data)
