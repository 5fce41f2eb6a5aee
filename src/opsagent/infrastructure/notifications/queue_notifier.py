"""Notifier that hands messages to the job queue.

Actual delivery (SMTP, SMS gateway) happens in the external worker that
consumes ``send-notification`` jobs; the returned tracking id is the job id.
"""

from __future__ import annotations

from typing import Any

import structlog

from opsagent.core.domain.errors import ValidationError
from opsagent.core.interfaces.job_queue import JobQueueProtocol
from opsagent.core.interfaces.notifier import NotifierProtocol

logger = structlog.get_logger(__name__)

SEND_NOTIFICATION_JOB = "send-notification"


class QueueNotifier(NotifierProtocol):
    def __init__(self, job_queue: JobQueueProtocol) -> None:
        self.job_queue = job_queue

    async def send(
        self,
        channel: str,
        recipient: str | None,
        *,
        template_hint: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> str:
        if not recipient:
            raise ValidationError(
                f"No recipient for {channel} notification", details={"channel": channel}
            )
        job_id = await self.job_queue.enqueue(
            SEND_NOTIFICATION_JOB,
            {
                "channel": channel,
                "recipient": recipient,
                "template_hint": template_hint,
                "payload": dict(payload or {}),
            },
        )
        logger.debug("notifier.queued", channel=channel, job_id=job_id)
        return job_id
