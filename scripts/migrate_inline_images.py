"""Moves images still stored inline (data URIs / base64 in table columns) to object storage.

Each inline image is decoded, converted when it is HEIC/HEIF, uploaded under a
deterministic key and the row is pointed at the public URL. Rows already
holding a URL are left alone, so the script can be re-run safely.

    python -m scripts.migrate_inline_images [--table clients] [--dry-run]
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from core.data_client import (
    DataAccessClient, get_data_client,
    SITE_SETTINGS_TABLE, ABOUT_TABLE, CATEGORIES_TABLE, CLIENTS_TABLE, CLIENT_IMAGES_TABLE,
)
from core.errors import AdminError, UploadError
from core.images import ImageUploader, PreparedImage, decode_inline_image, is_inline_image, prepare_image

logger = logging.getLogger("PCMS_Core").getChild("Migration")

KEY_PREFIX = "migrated"
DIGEST_LENGTH = 16
VERIFY_TIMEOUT = 10.0


@dataclass(frozen=True)
class MigrationTarget:
    table: str
    column: str


TARGETS = [
    MigrationTarget(SITE_SETTINGS_TABLE, "hero_image"),
    MigrationTarget(ABOUT_TABLE, "image"),
    MigrationTarget(CATEGORIES_TABLE, "cover_image"),
    MigrationTarget(CLIENTS_TABLE, "cover_image"),
    MigrationTarget(CLIENT_IMAGES_TABLE, "image_url"),
]


@dataclass
class MigrationReport:
    migrated: Dict[str, str] = field(default_factory=dict)
    pending: List[str] = field(default_factory=list)
    skipped: int = 0
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        parts = [f"{len(self.migrated)} migrated", f"{self.skipped} skipped", f"{len(self.failed)} failed"]
        if self.pending:
            parts.insert(0, f"{len(self.pending)} would be migrated")
        return ", ".join(parts)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Move inline-encoded images to object storage")
    parser.add_argument(
        "--table",
        action="append",
        choices=sorted({target.table for target in TARGETS}),
        help="Only migrate this table (repeatable; default: all image columns)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List rows holding inline images without uploading or updating anything",
    )
    return parser.parse_args(argv)


def migration_key(target: MigrationTarget, row_id: str, image: PreparedImage) -> str:
    """Same row and same image bytes always map to the same object key."""
    digest = hashlib.sha256(image.content).hexdigest()[:DIGEST_LENGTH]
    return f"{KEY_PREFIX}/{target.table}/{row_id}-{digest}.{image.extension}"


async def verify_public_url(http: httpx.AsyncClient, url: str) -> bool:
    """The object must be reachable at its public URL before any row points at it."""
    try:
        response = await http.head(url)
        if response.status_code in (403, 405):
            # Some CDNs refuse HEAD
            response = await http.get(url)
    except httpx.HTTPError as e:
        logger.warning(f"Could not verify {url}: {e}")
        return False
    return 200 <= response.status_code < 400


async def fetch_rows(db: DataAccessClient, target: MigrationTarget) -> List[dict]:
    response = await db.execute(
        f"[{target.table}] select {target.column}",
        lambda: db.table(target.table).select(f"id, {target.column}").execute(),
    )
    return response.data or []


async def migrate_row(db: DataAccessClient, uploader: ImageUploader, http: httpx.AsyncClient,
                      target: MigrationTarget, row: dict, report: MigrationReport, dry_run: bool = False) -> None:
    row_id = str(row.get("id"))
    label = f"{target.table}:{row_id}.{target.column}"
    ref = row.get(target.column)
    if not is_inline_image(ref):
        report.skipped += 1
        return
    if dry_run:
        report.pending.append(label)
        return

    try:
        prepared = await asyncio.to_thread(prepare_image, decode_inline_image(ref), label, uploader.jpeg_quality)
    except AdminError as e:
        logger.error(f"[{label}] Inline image could not be decoded: {e}")
        report.failed[label] = str(e)
        return

    key = migration_key(target, row_id, prepared)
    try:
        await uploader.store(key, prepared)
        url = await uploader.public_url(key)
        if not await verify_public_url(http, url):
            raise UploadError(f"Public URL {url} is not reachable.")
    except AdminError as e:
        await uploader.discard(key)
        logger.error(f"[{label}] Migration failed, object removed: {e}")
        report.failed[label] = str(e)
        return

    try:
        await db.execute(
            f"[{target.table}:{row_id}] set {target.column}",
            lambda: db.table(target.table).update({target.column: url}).eq("id", row_id).execute(),
        )
    except AdminError as e:
        if not await settle_failed_update(db, uploader, target, row_id, url, key, label, e):
            report.failed[label] = str(e)
            return

    logger.info(f"[{label}] Migrated to {key} (converted={prepared.converted}).")
    report.migrated[label] = url


async def settle_failed_update(db: DataAccessClient, uploader: ImageUploader, target: MigrationTarget,
                               row_id: str, url: str, key: str, label: str, error: AdminError) -> bool:
    """
    Decides what to do with the uploaded object after the row update reported a failure.

    A timed-out update may still have been applied, so the row is read back first.
    Returns True when the row already references `url`. The object is only removed
    once the row is known not to reference it.
    """
    try:
        current = await fetch_column(db, target, row_id)
    except AdminError as read_error:
        logger.error(f"[{label}] Update failed ({error}) and the row could not be re-read ({read_error}); "
                     f"keeping object {key}.")
        return False
    if current == url:
        logger.warning(f"[{label}] Update reported '{error}' but the row already references {key}.")
        return True
    await uploader.discard(key)
    logger.error(f"[{label}] Migration failed, object removed: {error}")
    return False


async def fetch_column(db: DataAccessClient, target: MigrationTarget, row_id: str) -> Optional[str]:
    response = await db.execute(
        f"[{target.table}:{row_id}] select {target.column}",
        lambda: db.table(target.table).select(f"id, {target.column}").eq("id", row_id).execute(),
    )
    if not response.data:
        return None
    return response.data[0].get(target.column)


async def migrate(db: DataAccessClient, tables: Optional[List[str]] = None, dry_run: bool = False,
                  uploader: Optional[ImageUploader] = None, http: Optional[httpx.AsyncClient] = None) -> MigrationReport:
    """Migrates every selected target; one failing row never stops the run."""
    report = MigrationReport()
    uploader = uploader or ImageUploader(db)
    targets = [target for target in TARGETS if not tables or target.table in tables]
    own_http = http is None
    http = http or httpx.AsyncClient(timeout=VERIFY_TIMEOUT, follow_redirects=True)
    try:
        for target in targets:
            try:
                rows = await fetch_rows(db, target)
            except AdminError as e:
                logger.error(f"[{target.table}] Could not list rows: {e}")
                report.failed[f"{target.table}.{target.column}"] = str(e)
                continue
            logger.info(f"[{target.table}] Checking {len(rows)} row(s) for inline '{target.column}' images.")
            for row in rows:
                await migrate_row(db, uploader, http, target, row, report, dry_run=dry_run)
    finally:
        if own_http:
            await http.aclose()
    return report


async def run(tables: Optional[List[str]], dry_run: bool) -> int:
    run_started = time.perf_counter()
    try:
        db = await get_data_client(use_service_key=True)
    except (ValueError, RuntimeError) as e:
        print(f"Cannot connect to the backend: {e}", file=sys.stderr)
        return 1

    report = await migrate(db, tables=tables, dry_run=dry_run)
    duration = time.perf_counter() - run_started
    logger.info(f"Inline image migration finished in {duration:.1f}s: {report.summary()}")
    print(report.summary() + ("; no changes made." if dry_run else "."))
    for label in report.pending:
        print(f"  inline: {label}")
    for label, reason in report.failed.items():
        print(f"  FAILED {label}: {reason}", file=sys.stderr)
    return 0 if report.ok else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    return asyncio.run(run(args.table, args.dry_run))


if __name__ == "__main__":  # pragma: no cover - manual execution path
    sys.exit(main())
