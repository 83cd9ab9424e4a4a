"""
Wiring — builds the stores, queue client and services from Settings.

Both the API process and the standalone worker build their components here,
so the two always agree on queue names, retry policy and store backends.
"""
from __future__ import annotations

from dataclasses import dataclass

from config.settings import Settings
from database.store_base import BaseAccountStore, BaseCommentStore
from database.store_factory import create_account_store, create_comment_store
from integrations.assets import BaseAssetUploader, create_asset_uploader
from integrations.mailer import BaseMailer, create_mailer
from job_queue.client import JobQueue
from job_queue.message_queue import JobOptions, create_message_queue
from services.account_service import AccountService
from services.comment_propagation import register_comment_propagation


@dataclass
class Container:
    settings: Settings
    accounts: BaseAccountStore
    comments: BaseCommentStore
    queue: JobQueue
    mailer: BaseMailer
    uploader: BaseAssetUploader
    account_service: AccountService

    async def start(self, consume: bool = None) -> None:
        if consume is None:
            consume = self.settings.queue.embedded_worker
        await self.queue.start(consume=consume)

    async def close(self) -> None:
        await self.queue.close()
        await self.mailer.close()
        await self.uploader.close()


def build_queue(settings: Settings) -> JobQueue:
    q = settings.queue
    backend = create_message_queue({
        "backend": q.backend,
        "redis_url": q.redis_url,
        "stalled_timeout_ms": q.stalled_timeout_ms,
    })
    return JobQueue(
        backend,
        consumer_group=q.consumer_group,
        concurrency=q.concurrency,
        promote_interval=q.delayed_promote_interval,
        default_options=JobOptions(
            max_attempts=q.max_attempts,
            backoff_delay_ms=q.backoff_delay_ms,
            backoff_type=q.backoff_type,
        ),
    )


def build_container(settings: Settings) -> Container:
    """Construct every component and register the propagation processor exactly once."""
    store_config = {
        "store_backend": settings.database.store_backend,
        "store_file_dir": settings.database.store_file_dir,
    }
    accounts = create_account_store(store_config)
    comments = create_comment_store(store_config)
    queue = build_queue(settings)
    register_comment_propagation(queue, comments, settings.queue.propagation_queue)

    mailer = create_mailer(settings.mail)
    uploader = create_asset_uploader(settings.upload)
    service = AccountService(
        accounts,
        queue,
        settings,
        mailer=mailer,
        uploader=uploader,
    )
    return Container(
        settings=settings,
        accounts=accounts,
        comments=comments,
        queue=queue,
        mailer=mailer,
        uploader=uploader,
        account_service=service,
    )
