"""Durable asset job queue helpers (Redis/RQ)."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import or_
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.generated_asset import GeneratedAsset
from models.generation_queue import GenerationQueueEntry


PIPELINE_QUEUE_NAME = "asset_pipeline"
GENERATION_QUEUE_NAME = "asset_generation"
GENERATION_IN_PROGRESS_STATUSES = ("generating",)


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_pipeline_queue() -> Queue:
    """Return the post-approval pipeline queue."""
    return Queue(
        name=PIPELINE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def get_generation_queue() -> Queue:
    """Return the queued-generation queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_pipeline_job(asset_id: int, force: bool = False) -> Job:
    """Enqueue a pipeline run. No automatic retry; re-runs are explicit."""
    queue = get_pipeline_queue()
    return queue.enqueue(
        "services.pipeline.process_pipeline_job",
        asset_id,
        force,
        job_id=f"pipeline:{asset_id}:{uuid.uuid4().hex[:8]}",
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_generation_job(queue_entry_id: int) -> Job:
    """Enqueue generation of a queued asset row."""
    queue = get_generation_queue()
    return queue.enqueue(
        "services.generation.process_generation_job",
        queue_entry_id,
        job_id=f"generation:{queue_entry_id}",
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def recover_stalled_pipeline_runs(max_age_minutes: int = 30) -> int:
    """Fail pipeline runs whose lease expired without reaching a terminal state."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(GeneratedAsset).where(
                GeneratedAsset.pipeline_status == "processing",
                or_(GeneratedAsset.pipeline_started_at.is_(None), GeneratedAsset.pipeline_started_at < cutoff),
            )
        )
        assets = result.scalars().all()
        for asset in assets:
            asset.pipeline_status = "failed"
            asset.pipeline_error = "Pipeline run was interrupted. Re-run processing for this asset."
        if assets:
            await db.commit()
        return len(assets)


async def recover_stalled_generations(max_age_minutes: int = 30) -> int:
    """Fail generations left in progress after restarts/worker interruptions."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(GeneratedAsset).where(
                GeneratedAsset.status.in_(GENERATION_IN_PROGRESS_STATUSES),
                GeneratedAsset.updated_at < cutoff,
            )
        )
        assets = result.scalars().all()
        now = datetime.now(timezone.utc)
        for asset in assets:
            asset.status = "failed"
            asset.error_message = "Generation was interrupted. Regenerate this asset."
            entries = await db.execute(
                select(GenerationQueueEntry).where(
                    GenerationQueueEntry.asset_id == asset.id,
                    GenerationQueueEntry.status == "processing",
                )
            )
            for entry in entries.scalars().all():
                entry.status = "failed"
                entry.error_message = "stalled"
                entry.completed_at = now
        if assets:
            await db.commit()
        return len(assets)
