"""Durable job queue on Redis Streams.

At-least-once delivery: consumers ack after handling, failed jobs are
re-added with a bumped attempt counter until ``max_retries``, then parked
on a dead-letter stream. Publishers may pass a dedup key so the same logical
job is only enqueued once within the key's TTL.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ResponseError

from stocksniper import metrics
from stocksniper.config import settings
from stocksniper.dispatch.jobs import (
    AutoPurchaseJob,
    JobDecodeError,
    StockCheckJob,
    decode_job,
    encode_job,
)

logger = logging.getLogger(__name__)

DEDUP_PREFIX = "dispatch:dedup:"
PENDING_MARKER = "pending"


@dataclass
class PublishResult:
    message_id: str
    duplicate: bool = False


@dataclass
class QueueMessage:
    message_id: str
    body: str


class RedisJobQueue:
    """Redis Streams queue with consumer groups, retries and a dead-letter stream."""

    def __init__(
        self,
        stream: Optional[str] = None,
        group: Optional[str] = None,
        dead_letter_stream: Optional[str] = None,
        max_retries: Optional[int] = None,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.stream = stream or settings.purchase_queue_stream
        self.group = group or settings.purchase_consumer_group
        self.dead_letter_stream = dead_letter_stream or settings.purchase_dead_letter_stream
        self.max_retries = settings.purchase_max_retries if max_retries is None else max_retries
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = client
        self._group_ready = False

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(
        self,
        job: AutoPurchaseJob | StockCheckJob,
        dedup_key: Optional[str] = None,
        dedup_ttl_seconds: int = 120,
    ) -> PublishResult:
        """
        Append a job to the stream.

        With a ``dedup_key``, a second publish inside the TTL returns the first
        message id with ``duplicate=True`` and enqueues nothing.
        """
        redis_client = await self._get_redis()

        full_key = f"{DEDUP_PREFIX}{dedup_key}" if dedup_key else None
        if full_key:
            claimed = await redis_client.set(full_key, PENDING_MARKER, nx=True, ex=dedup_ttl_seconds)
            if not claimed:
                existing = await redis_client.get(full_key)
                logger.info(f"Duplicate publish suppressed for {dedup_key} (existing={existing})")
                metrics.record_dispatch(job.kind, "duplicate")
                return PublishResult(message_id=existing or "", duplicate=True)

        try:
            message_id = await redis_client.xadd(self.stream, {"job": encode_job(job)})
        except Exception:
            if full_key:
                await redis_client.delete(full_key)
            metrics.record_dispatch(job.kind, "error")
            raise

        if full_key:
            await redis_client.set(full_key, message_id, xx=True, keepttl=True)

        metrics.record_dispatch(job.kind, "queued")
        logger.info(f"Queued {job.kind} job {message_id}" + (f" (dedup={dedup_key})" if dedup_key else ""))
        return PublishResult(message_id=message_id)

    async def ensure_group(self):
        """Create the consumer group (and stream) if missing."""
        if self._group_ready:
            return
        redis_client = await self._get_redis()
        try:
            await redis_client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info(f"Created consumer group {self.group} on {self.stream}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def read(self, consumer: str, count: int = 1, block_ms: int = 5000) -> list[QueueMessage]:
        """Read new messages for this consumer (blocking up to ``block_ms``)."""
        await self.ensure_group()
        redis_client = await self._get_redis()
        response = await redis_client.xreadgroup(
            self.group,
            consumer,
            {self.stream: ">"},
            count=count,
            block=block_ms,
        )
        messages = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                messages.append(QueueMessage(message_id=message_id, body=fields.get("job", "")))
        return messages

    async def reclaim(self, consumer: str, min_idle_ms: Optional[int] = None, count: int = 10) -> list[QueueMessage]:
        """Take over messages left pending by crashed consumers."""
        await self.ensure_group()
        redis_client = await self._get_redis()
        result = await redis_client.xautoclaim(
            self.stream,
            self.group,
            consumer,
            min_idle_time=min_idle_ms or settings.purchase_reclaim_idle_ms,
            start_id="0-0",
            count=count,
        )
        entries = result[1] if result and len(result) > 1 else []
        messages = [
            QueueMessage(message_id=message_id, body=(fields or {}).get("job", ""))
            for message_id, fields in entries
            if fields
        ]
        if messages:
            logger.warning(f"Reclaimed {len(messages)} stale message(s) for {consumer}")
        return messages

    async def ack(self, message_id: str):
        redis_client = await self._get_redis()
        await redis_client.xack(self.stream, self.group, message_id)

    async def retry(self, message: QueueMessage, reason: str) -> Optional[str]:
        """
        Re-enqueue a failed job with its attempt counter bumped, or dead-letter
        it once ``max_retries`` is reached. The original message is acked.

        Returns:
            New message id, or None when dead-lettered
        """
        try:
            job = decode_job(message.body)
        except JobDecodeError as e:
            await self.dead_letter(message, f"undecodable: {e.reason}")
            return None

        if job.delivery_attempt + 1 > self.max_retries:
            await self.dead_letter(message, f"max retries exceeded: {reason}")
            return None

        retried = job.model_copy(update={"delivery_attempt": job.delivery_attempt + 1})
        redis_client = await self._get_redis()
        new_id = await redis_client.xadd(self.stream, {"job": encode_job(retried)})
        await self.ack(message.message_id)
        metrics.record_dispatch(job.kind, "retried")
        logger.warning(
            f"Retrying {job.kind} job {message.message_id} as {new_id} "
            f"(attempt {retried.delivery_attempt}/{self.max_retries}): {reason}"
        )
        return new_id

    async def dead_letter(self, message: QueueMessage, reason: str):
        redis_client = await self._get_redis()
        await redis_client.xadd(
            self.dead_letter_stream,
            {"job": message.body, "reason": reason, "source_id": message.message_id},
        )
        await self.ack(message.message_id)
        metrics.record_dead_letter(reason.split(":", 1)[0])
        logger.error(f"Dead-lettered job {message.message_id}: {reason}")

    async def dead_letter_count(self) -> int:
        redis_client = await self._get_redis()
        return await redis_client.xlen(self.dead_letter_stream)
