"""
Message Service — the user-facing rules around scheduled messages.

Validates schedule requests before anything is stored, scopes every read
to the calling user, and only lets a message be canceled while it is still
Scheduled. The scheduler is told about creations and cancellations but
never called synchronously for delivery.
"""
from __future__ import annotations

import structlog
from typing import Any, Union

import pydantic

from database.store_base import BaseMessageStore
from models.errors import InvalidTransitionError, MessageNotFoundError, ValidationError
from models.schemas import MessageStatus, ScheduledMessage, ScheduleRequest
from scheduler.loop import DeliveryScheduler

logger = structlog.get_logger()


class MessageService:

    def __init__(self, store: BaseMessageStore, scheduler: DeliveryScheduler):
        self.store = store
        self.scheduler = scheduler

    async def schedule(
        self, user_id: str, payload: Union[ScheduleRequest, dict[str, Any]],
    ) -> ScheduledMessage:
        """
        Validate and store a new message in status Scheduled.

        Raises ValidationError when a field is missing or malformed; in that
        case nothing is stored.
        """
        if not user_id:
            raise ValidationError("user id is required",
                                  errors=[{"loc": ["user_id"], "msg": "required"}])

        if isinstance(payload, ScheduleRequest):
            request = payload
        else:
            try:
                request = ScheduleRequest.model_validate(payload)
            except pydantic.ValidationError as e:
                errors = [
                    {"loc": list(err["loc"]), "msg": err["msg"]}
                    for err in e.errors()
                ]
                raise ValidationError("invalid schedule request", errors=errors) from e

        message = await self.store.create_message(
            user_id=user_id,
            contact=request.contact,
            content=request.content,
            scheduled_at=request.scheduled_at,
        )
        logger.info("message_scheduled",
                    message_id=message.id,
                    user_id=user_id,
                    scheduled_at=message.scheduled_at.isoformat())
        self.scheduler.schedule(message)
        return message

    async def list_messages(self, user_id: str) -> list[ScheduledMessage]:
        return await self.store.list_messages(user_id=user_id)

    async def get_message(self, user_id: str, message_id: str) -> ScheduledMessage:
        message = await self.store.get_message(message_id)
        # another user's message is reported exactly like a missing one
        if message is None or message.user_id != user_id:
            raise MessageNotFoundError(message_id)
        return message

    async def cancel(self, user_id: str, message_id: str) -> ScheduledMessage:
        """
        Cancel a message that has not been dispatched yet.

        Raises InvalidTransitionError once the message is Processing or
        terminal; an attempt already running is never aborted.
        """
        message = await self.get_message(user_id, message_id)
        canceled = await self.store.compare_and_set_status(
            message_id, MessageStatus.SCHEDULED, MessageStatus.CANCELED,
        )
        if not canceled:
            current = await self.store.get_message(message_id)
            current_status = current.status if current else message.status
            logger.info("message_cancel_rejected",
                        message_id=message_id, status=current_status.value)
            raise InvalidTransitionError(message_id, current_status, MessageStatus.CANCELED)

        self.scheduler.cancel(message)
        logger.info("message_canceled", message_id=message_id, user_id=user_id)
        return await self.get_message(user_id, message_id)
