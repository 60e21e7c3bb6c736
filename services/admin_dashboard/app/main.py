# services/admin_dashboard/app/main.py

import asyncio
import html
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import fastapi
import gradio as gr
from fastapi import Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from core.auth import LOGIN_PATH, AdminUser, admin_or_none, extract_token, sign_in
from core.config import settings
from core.crud import AdminCRUD
from core.data_client import DataAccessClient
from core.errors import AdminError, NetworkError
from core.forms import AdminForm, RenderedField
from core.images import ImageUploader, UploadedFile
from core.resources import RESOURCES, AdminResource, populate_options

logger = logging.getLogger("PCMS_Core").getChild("AdminDashboard")

DASHBOARD_PATH = "/admin"
NEW_ENTRY = "(new entry)"
# Verified session tokens are trusted for this long before asking the auth service again
SESSION_CACHE_SECONDS = 60


class Dashboard:
    """Backend handle plus one set of CRUD stores per open browser session."""

    def __init__(self, clock=time.monotonic):
        self.db: Optional[DataAccessClient] = None
        self.sessions: Dict[str, Dict[str, AdminCRUD]] = {}
        self._verified: Dict[str, Tuple[AdminUser, float]] = {}
        self._clock = clock

    def require_db(self) -> DataAccessClient:
        if self.db is None:
            raise NetworkError("Dashboard started without a backend connection.",
                               user_message="The dashboard is not connected to the backend. Check the service logs.")
        return self.db

    def store(self, resource: AdminResource, session_id: str) -> AdminCRUD:
        stores = self.sessions.setdefault(session_id, {})
        if resource.name not in stores:
            stores[resource.name] = resource.store(self.require_db())
        return stores[resource.name]

    def form(self, resource: AdminResource, session_id: str) -> AdminForm:
        db = self.require_db()
        return resource.form(self.store(resource, session_id), ImageUploader(db))

    def close_session(self, session_id: str) -> None:
        stores = self.sessions.pop(session_id, {})
        for store in stores.values():
            store.close()
        if stores:
            logger.info(f"Closed {len(stores)} store(s) for dashboard session {session_id}.")

    # --- Session cache for the guard middleware ---

    def cached_user(self, token: str) -> Optional[AdminUser]:
        entry = self._verified.get(token)
        if entry and self._clock() - entry[1] < SESSION_CACHE_SECONDS:
            return entry[0]
        self._verified.pop(token, None)
        return None

    def remember(self, user: AdminUser) -> None:
        now = self._clock()
        # Sweep tokens nobody has presented since they expired
        expired = [token for token, (_, verified_at) in self._verified.items()
                   if now - verified_at >= SESSION_CACHE_SECONDS]
        for token in expired:
            del self._verified[token]
        self._verified[user.access_token] = (user, now)

    def forget(self, token: Optional[str]) -> None:
        if token:
            self._verified.pop(token, None)


dashboard = Dashboard()


# --- Field Rendering ---

@dataclass
class FieldWidgets:
    """Gradio components drawn for one form field."""
    name: str
    value: Any
    upload: Any = None
    preview: Any = None


def _preview_html(field: RenderedField) -> str:
    if field.preview is None or field.preview.kind == "empty":
        return "<em>No image</em>"
    return f'<img src="{html.escape(field.preview.src, quote=True)}" style="max-height:160px" />'


def render_field(field: RenderedField) -> FieldWidgets:
    """Single renderer mapping a field descriptor to Gradio inputs."""
    label = f"{field.label} *" if field.required else field.label
    if field.kind == "select":
        return FieldWidgets(field.name, gr.Dropdown(label=label, choices=field.options, value=field.value,
                                                    info=field.help_text, allow_custom_value=False))
    if field.kind == "richtext":
        return FieldWidgets(field.name, gr.Textbox(label=label, value=field.value, lines=6, info=field.help_text))
    if field.kind == "image":
        with gr.Row():
            with gr.Column(scale=3):
                value = gr.Textbox(label=f"{label} (URL)", value=field.value, info=field.help_text)
                upload = gr.File(label=f"Upload new {field.label.lower()}", type="filepath",
                                 file_types=["image", ".heic", ".heif"])
            with gr.Column(scale=2):
                preview = gr.HTML(_preview_html(field))
        return FieldWidgets(field.name, value, upload, preview)
    return FieldWidgets(field.name, gr.Textbox(label=label, value=field.value, max_lines=1, info=field.help_text))


# --- Event Handlers ---

def _session_id(request: gr.Request) -> str:
    return getattr(request, "session_hash", None) or "anonymous"


def _rows_table(store: AdminCRUD, form: AdminForm) -> List[List[Any]]:
    columns = ["id"] + [spec.name for spec in form.fields]
    rows = []
    for item in store.snapshot():
        row = []
        for column in columns:
            value = item.get(column)
            text = "" if value is None else str(value)
            # Inline images would flood the table
            row.append(text if len(text) <= 80 else text[:77] + "...")
        rows.append(row)
    return rows


def _choices(store: AdminCRUD, resource: AdminResource) -> List[str]:
    ids = [getattr(item, "id") for item in store.items]
    return ids if resource.singleton else [NEW_ENTRY] + ids


def _field_updates(form: AdminForm, widgets: List[FieldWidgets], values: Dict[str, Any],
                   errors: Optional[Dict[str, str]] = None, clear_uploads: bool = True) -> List[Any]:
    updates: List[Any] = []
    for field, widget in zip(form.render(values, errors), widgets):
        updates.append(gr.update(value=field.value, choices=field.options) if field.kind == "select"
                       else gr.update(value=field.value))
        if widget.upload is not None:
            updates.append(gr.update(value=None) if clear_uploads else gr.update())
            updates.append(gr.update(value=_preview_html(field)))
    return updates


def _status(message: str, errors: Optional[Dict[str, str]] = None) -> str:
    lines = [message]
    for name, error in (errors or {}).items():
        lines.append(f"- **{name}**: {error}")
    return "\n".join(lines)


async def _read_uploads(widgets: List[FieldWidgets], files: List[Optional[str]]) -> Dict[str, UploadedFile]:
    uploads: Dict[str, UploadedFile] = {}
    for widget, path in zip([w for w in widgets if w.upload is not None], files):
        if not path:
            continue
        content = await asyncio.to_thread(_read_file, path)
        uploads[widget.name] = UploadedFile(filename=os.path.basename(path), content=content)
    return uploads


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _current_id(selected: Optional[str]) -> Optional[str]:
    return None if not selected or selected == NEW_ENTRY else selected


def build_tab(resource: AdminResource):
    """Draws one admin page and wires its handlers."""
    empty_form = AdminForm(resource.fields, store=None)
    columns = ["id"] + [spec.name for spec in resource.fields]

    with gr.Row():
        selector = gr.Dropdown(label="Entry", choices=[] if resource.singleton else [NEW_ENTRY],
                               value=None if resource.singleton else NEW_ENTRY, scale=3)
        refresh_button = gr.Button("Refresh", scale=1)
    widgets = [render_field(field) for field in empty_form.render()]
    with gr.Row():
        save_button = gr.Button("Save", variant="primary")
        delete_button = gr.Button("Delete", variant="stop", visible=not resource.singleton)
    status = gr.Markdown()
    table = gr.Dataframe(headers=columns, value=[], interactive=False, wrap=True)

    value_inputs = [w.value for w in widgets]
    upload_inputs = [w.upload for w in widgets if w.upload is not None]
    field_outputs: List[Any] = []
    for w in widgets:
        field_outputs.append(w.value)
        if w.upload is not None:
            field_outputs.extend([w.upload, w.preview])
    outputs = [table, selector, status] + field_outputs

    async def refresh(selected: Optional[str], request: gr.Request):
        try:
            form = dashboard.form(resource, _session_id(request))
        except AdminError as e:
            return [gr.update(), gr.update(), _status(e.user_message)] + [gr.update()] * len(field_outputs)
        await populate_options(form, dashboard.db)
        result = await form.store.list()
        if not result.ok:
            message = f"Could not load {resource.title.lower()}: {result.error.user_message}"
        else:
            message = f"Loaded {len(form.store.items)} entr{'y' if len(form.store.items) == 1 else 'ies'}."
        choices = _choices(form.store, resource)
        if resource.singleton:
            selected = choices[0] if choices else None
        elif selected not in choices:
            selected = NEW_ENTRY
        record = form.store.get(selected) if _current_id(selected) else None
        return ([_rows_table(form.store, form), gr.update(choices=choices, value=selected), message]
                + _field_updates(form, widgets, form.initial_values(record)))

    async def select(selected: Optional[str], request: gr.Request):
        try:
            form = dashboard.form(resource, _session_id(request))
        except AdminError as e:
            return [gr.update(), gr.update(), _status(e.user_message)] + [gr.update()] * len(field_outputs)
        await populate_options(form, dashboard.db)
        record_id = _current_id(selected)
        record = form.store.get(record_id) if record_id else None
        message = "" if record or not record_id else "This entry is no longer listed. Refresh to reload."
        return ([gr.update(), gr.update(), message]
                + _field_updates(form, widgets, form.initial_values(record)))

    async def save(request: gr.Request, selected: Optional[str], *inputs):
        values = dict(zip([w.name for w in widgets], inputs[:len(value_inputs)]))
        files = list(inputs[len(value_inputs):])
        try:
            form = dashboard.form(resource, _session_id(request))
        except AdminError as e:
            return [gr.update(), gr.update(), _status(e.user_message)] + [gr.update()] * len(field_outputs)
        await populate_options(form, dashboard.db)
        uploads = await _read_uploads(widgets, files)
        result = await resource.submit(form, values, uploads=uploads, record_id=_current_id(selected))
        if not result.ok:
            message = result.error.user_message if result.error else "Please fix the highlighted fields."
            # Keep everything the user entered, including selected files
            return ([_rows_table(form.store, form), gr.update(), _status(f"Not saved: {message}", result.field_errors)]
                    + _field_updates(form, widgets, result.values, result.field_errors, clear_uploads=False))
        record_id = getattr(result.record, "id")
        return ([_rows_table(form.store, form), gr.update(choices=_choices(form.store, resource), value=record_id),
                 _status("Saved.")]
                + _field_updates(form, widgets, result.values))

    async def delete(selected: Optional[str], request: gr.Request):
        record_id = _current_id(selected)
        try:
            form = dashboard.form(resource, _session_id(request))
        except AdminError as e:
            return [gr.update(), gr.update(), _status(e.user_message)] + [gr.update()] * len(field_outputs)
        if record_id is None:
            return [gr.update(), gr.update(), "Select an entry to delete."] + [gr.update()] * len(field_outputs)
        result = await form.store.delete(record_id)
        if not result.ok:
            return ([_rows_table(form.store, form), gr.update(), _status(f"Not deleted: {result.error.user_message}")]
                    + [gr.update()] * len(field_outputs))
        return ([_rows_table(form.store, form), gr.update(choices=_choices(form.store, resource), value=NEW_ENTRY),
                 _status("Deleted.")]
                + _field_updates(form, widgets, form.initial_values(None)))

    refresh_button.click(refresh, inputs=[selector], outputs=outputs)
    selector.input(select, inputs=[selector], outputs=outputs)
    save_button.click(save, inputs=[selector] + value_inputs + upload_inputs, outputs=outputs)
    delete_button.click(delete, inputs=[selector], outputs=outputs)
    return refresh, selector, outputs


def close_session(request: gr.Request):
    dashboard.close_session(_session_id(request))


# --- Build Gradio Interface ---
with gr.Blocks(theme=gr.themes.Soft(), title="Portfolio Admin") as demo:
    gr.Markdown("# Portfolio Admin")
    gr.HTML('<a href="/logout">Sign out</a>')
    loaders = []
    with gr.Tabs():
        for admin_resource in RESOURCES.values():
            with gr.TabItem(admin_resource.title):
                loaders.append(build_tab(admin_resource))
    for loader, tab_selector, tab_outputs in loaders:
        demo.load(loader, inputs=[tab_selector], outputs=tab_outputs)
    demo.unload(close_session)


# --- FastAPI App: Login, Session Guard, Mounted Dashboard ---

@asynccontextmanager
async def lifespan(app: fastapi.FastAPI):
    logger.info("Admin dashboard lifespan startup: Initializing data-access client.")
    try:
        app.state.db = await DataAccessClient.connect(settings, use_service_key=True)
    except (ValueError, RuntimeError) as e:
        logger.error(f"Failed to initialize data-access client during startup: {e}", exc_info=True)
        app.state.db = None
    dashboard.db = app.state.db

    yield

    logger.info("Admin dashboard lifespan shutdown: Closing open sessions.")
    for session_id in list(dashboard.sessions):
        dashboard.close_session(session_id)
    dashboard.db = None
    app.state.db = None


app = fastapi.FastAPI(title="Portfolio Admin Dashboard", lifespan=lifespan)


LOGIN_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>Sign in</title></head>
<body style="font-family:sans-serif;max-width:22rem;margin:4rem auto">
<h1>Portfolio Admin</h1>
{error}
<form method="post" action="{action}">
<p><label>Email<br><input type="email" name="email" value="{email}" required autofocus></label></p>
<p><label>Password<br><input type="password" name="password" required></label></p>
<p><button type="submit">Sign in</button></p>
</form>
</body></html>"""


def login_page(error: Optional[str] = None, email: str = "", status_code: int = 200) -> HTMLResponse:
    error_html = f'<p style="color:#b00">{html.escape(error)}</p>' if error else ""
    return HTMLResponse(LOGIN_PAGE.format(error=error_html, action=LOGIN_PATH, email=html.escape(email, quote=True)),
                        status_code=status_code)


@app.middleware("http")
async def session_guard(request: Request, call_next):
    """Sends unauthenticated dashboard requests to the login page."""
    if request.url.path.startswith(DASHBOARD_PATH):
        token = extract_token(request)
        user = dashboard.cached_user(token) if token else None
        if user is None:
            user = await admin_or_none(request)
            if user is not None:
                dashboard.remember(user)
        if user is None:
            logger.info(f"Unauthenticated request to {request.url.path}, redirecting to login.")
            return RedirectResponse(LOGIN_PATH, status_code=303)
    return await call_next(request)


@app.get("/")
async def root():
    return RedirectResponse(DASHBOARD_PATH, status_code=303)


@app.get(LOGIN_PATH, response_class=HTMLResponse)
async def login_form():
    return login_page()


@app.post(LOGIN_PATH)
async def login(request: Request, email: str = Form(...), password: str = Form(...)):
    db = getattr(request.app.state, "db", None)
    if db is None:
        return login_page("The dashboard is not connected to the backend.", email, status_code=503)
    try:
        session = await sign_in(db, email, password)
    except AdminError as e:
        logger.warning(f"Failed sign-in for {email}: {e}")
        return login_page(e.user_message, email, status_code=e.status_code)

    dashboard.remember(session.user)
    response = RedirectResponse(DASHBOARD_PATH, status_code=303)
    response.set_cookie(
        settings.SESSION_COOKIE_NAME, session.access_token,
        max_age=session.expires_in, httponly=True, secure=settings.SESSION_COOKIE_SECURE, samesite="lax",
    )
    return response


@app.get("/logout")
async def logout(request: Request):
    dashboard.forget(extract_token(request))
    response = RedirectResponse(LOGIN_PATH, status_code=303)
    response.delete_cookie(settings.SESSION_COOKIE_NAME)
    return response


app = gr.mount_gradio_app(app, demo, path=DASHBOARD_PATH)
