"""
Message Producer — the ingress path.

validate → store.create → queue.enqueue, strictly in that order: a job is
only ever scheduled for a message that is already durable, and nothing is
written at all for invalid input.
"""
from __future__ import annotations

import structlog
from collections.abc import Mapping
from typing import Any

import pydantic

from core.errors import (
    PersistenceFailure, QueueUnavailable, StorageUnavailable,
    StorageWriteError, ValidationError,
)
from database.store_base import BaseMessageStore
from job_queue.message_queue import DEFAULT_MAX_ATTEMPTS, MessageQueue
from models.schemas import Message, MessageSubmission

logger = structlog.get_logger()


def _describe(error: dict[str, Any]) -> str:
    field = ".".join(str(part) for part in error.get("loc", ())) or "body"
    return f'"{field}" {error.get("msg", "is invalid")}'


def validate_submission(payload: Any) -> MessageSubmission:
    """Validate a raw payload, collecting every violation."""
    if not isinstance(payload, Mapping):
        raise ValidationError(['"body" must be a JSON object'])
    try:
        return MessageSubmission.model_validate(dict(payload))
    except pydantic.ValidationError as e:
        raise ValidationError([_describe(err) for err in e.errors()]) from e


class MessageProducer:
    def __init__(
        self,
        store: BaseMessageStore,
        queue: MessageQueue,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.store = store
        self.queue = queue
        self.max_attempts = max_attempts

    async def submit(self, payload: Any) -> Message:
        """
        Accept one message for delivery.

        Raises ValidationError (nothing stored), PersistenceFailure (nothing
        stored or enqueued) or QueueUnavailable (stored, never scheduled).
        """
        try:
            submission = validate_submission(payload)
        except ValidationError as e:
            logger.warning("validation_failed", details=e.errors)
            raise

        try:
            message = await self.store.create(str(submission.email), submission.message)
        except (StorageUnavailable, StorageWriteError) as e:
            logger.error("message_store_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceFailure("Could not store message", cause=e) from e

        try:
            job = await self.queue.enqueue(message.id, max_attempts=self.max_attempts)
        except QueueUnavailable:
            # TODO: a sweep over unsent records would re-schedule these
            logger.error("message_stored_not_scheduled", id=message.id, email=message.email)
            raise

        logger.info("message_saved_and_job_queued",
                    id=message.id,
                    email=message.email,
                    job_id=job.job_id)
        return message

    async def list_all(self) -> list[Message]:
        return await self.store.list_all(newest_first=True)

    async def get(self, message_id: str) -> Message:
        return await self.store.get_by_id(message_id)
