"""
Domain event publishing over Redis Pub/Sub.

Events are published after the owning transaction commits. Delivery is
best-effort: a publish failure is logged and never propagates, because the
lifecycle transition it describes has already happened.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from pydantic import BaseModel
from redis.exceptions import RedisError

from membership_service.core.config import Settings
from membership_shared.schemas.events import InvitationEvent, JoinRequestEvent, MembershipEvent

log = structlog.get_logger()


class Publisher(Protocol):
    async def publish(self, channel: str, message: str) -> int: ...


class EventNotifier:
    """Publishes lifecycle events to one channel per event family."""

    def __init__(
        self,
        redis: Publisher,
        invitations_channel: str,
        join_requests_channel: str,
        memberships_channel: str,
    ) -> None:
        self._redis = redis
        self._invitations_channel = invitations_channel
        self._join_requests_channel = join_requests_channel
        self._memberships_channel = memberships_channel

    @classmethod
    def from_settings(cls, redis: Publisher, settings: Settings) -> EventNotifier:
        return cls(
            redis,
            invitations_channel=settings.events_invitations_channel,
            join_requests_channel=settings.events_join_requests_channel,
            memberships_channel=settings.events_memberships_channel,
        )

    async def _publish(self, channel: str, event: BaseModel, key: str) -> bool:
        try:
            await self._redis.publish(channel, event.model_dump_json())
        except RedisError as exc:
            log.warning(
                "events.publish_failed",
                channel=channel,
                key=key,
                event_type=getattr(event, "event_type", None),
                error=str(exc),
            )
            return False
        log.debug("events.published", channel=channel, key=key)
        return True

    async def publish_invitation_event(self, event: InvitationEvent) -> bool:
        return await self._publish(self._invitations_channel, event, str(event.invitation_id))

    async def publish_join_request_event(self, event: JoinRequestEvent) -> bool:
        return await self._publish(self._join_requests_channel, event, str(event.join_request_id))

    async def publish_membership_event(self, event: MembershipEvent) -> bool:
        return await self._publish(self._memberships_channel, event, f"{event.organization_id}:{event.user_id}")
