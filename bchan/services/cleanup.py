import asyncio
import datetime
import traceback
from dataclasses import dataclass, field
from typing import List

import click
from loguru import logger

from bchan.errors import StorageError
from bchan.services.board import referenced_storage_keys

# Objects younger than this may belong to a post that is still being written
DEFAULT_GRACE_PERIOD = datetime.timedelta(minutes=10)


@dataclass
class CleanupReport:
    scanned: int = 0
    deleted: int = 0
    failed: int = 0
    orphans: List[str] = field(default_factory=list)


class OrphanReconciler:
    """
    Deletes stored objects that no thread or post references any more.

    Originals and thumbnails share a key, so both buckets are checked against
    the same set of referenced storage paths.
    """

    def __init__(self, storage, sessionmaker, images_bucket: str, thumbnails_bucket: str,
                 grace_period: datetime.timedelta = DEFAULT_GRACE_PERIOD):
        self.storage = storage
        self.sessionmaker = sessionmaker
        self.buckets = (images_bucket, thumbnails_bucket)
        self.grace_period = grace_period

    async def run(self, dry_run: bool = False) -> CleanupReport:
        logger.info("Starting file cleanup process...")
        report = CleanupReport()
        cutoff = datetime.datetime.now(datetime.timezone.utc) - self.grace_period

        # List storage before reading the database: a row committed in between
        # only makes its file look referenced
        listings = {}
        for bucket in self.buckets:
            try:
                listings[bucket] = await self.storage.list_objects(bucket)
            except StorageError as e:
                logger.error(f"Skipping bucket {bucket}: {e.message}")
                report.failed += 1

        async with self.sessionmaker() as db:
            referenced = await referenced_storage_keys(db)

        for bucket, objects in listings.items():
            for key, last_modified in objects:
                report.scanned += 1
                if key in referenced or _as_utc(last_modified) > cutoff:
                    continue

                report.orphans.append(f"{bucket}/{key}")
                if dry_run:
                    continue
                try:
                    await self.storage.delete(bucket, key)
                    report.deleted += 1
                    logger.info(f"Deleted orphaned object: {bucket}/{key}")
                except StorageError as e:
                    report.failed += 1
                    logger.error(f"Error deleting {bucket}/{key}: {e.message}")

        logger.info(
            f"File cleanup completed. Scanned {report.scanned}, deleted {report.deleted}, "
            f"failed {report.failed}, orphans {len(report.orphans)}."
        )
        return report


def _as_utc(moment: datetime.datetime) -> datetime.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=datetime.timezone.utc)
    return moment


async def run_periodically(reconciler: OrphanReconciler, interval_hours: float, first_delay_hours: float = 1) -> None:
    """Run the reconciler forever; meant to be started as a background task and cancelled on shutdown"""
    logger.info(f"Scheduling file cleanup every {interval_hours} hours")
    await asyncio.sleep(first_delay_hours * 3600)
    while True:
        try:
            await reconciler.run()
        except Exception as e:
            logger.error(f"Error during file cleanup: {str(e)}")
            logger.error(traceback.format_exc())
        await asyncio.sleep(interval_hours * 3600)


async def _run_once(dry_run: bool, grace_minutes: float) -> CleanupReport:
    from bchan.config import Settings
    from bchan.db.database import setup_database
    from bchan.main import build_storage

    settings = Settings.from_env()
    engine, sessionmaker = setup_database(settings.database_url, echo=settings.db_echo)
    try:
        reconciler = OrphanReconciler(
            build_storage(settings),
            sessionmaker,
            settings.images_bucket,
            settings.thumbnails_bucket,
            grace_period=datetime.timedelta(minutes=grace_minutes),
        )
        return await reconciler.run(dry_run=dry_run)
    finally:
        await engine.dispose()


@click.command()
@click.option("--dry-run", is_flag=True, help="Only list orphaned objects")
@click.option("--grace-minutes", default=10.0, show_default=True, help="Keep objects younger than this")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(dry_run: bool, grace_minutes: float, verbose: bool) -> None:
    """Delete stored files that no thread or post references."""
    from bchan.util.log_config import setup_logging

    setup_logging(log_file=None, level="DEBUG" if verbose else "INFO")
    report = asyncio.run(_run_once(dry_run, grace_minutes))

    for orphan in report.orphans:
        click.echo(orphan)
    click.echo(f"scanned={report.scanned} deleted={report.deleted} failed={report.failed}")
    if report.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
