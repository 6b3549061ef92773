"""Translate user intents (feed now, push schedule) into command publications."""

from __future__ import annotations

from typing import Any

from .codec import build_feed_command, build_schedule_command, normalize_schedules
from .errors import AccessDeniedError, ValidationError
from .logging_setup import bus_logger as logger
from .ports import OwnershipLookup
from .schedules import ScheduleStore


class CommandDispatcher:
    """Stateless: every call validates, optionally checks ownership, publishes."""

    def __init__(
        self,
        bus,
        *,
        schedules: ScheduleStore | None = None,
        ownership: OwnershipLookup | None = None,
    ):
        self._bus = bus
        self._schedules = schedules
        self._ownership = ownership

    def _authorize(self, identity: str, account_id: int | None) -> None:
        if account_id is None:
            return
        if self._ownership is None:
            raise AccessDeniedError("No ownership store configured for account checks")
        if not self._ownership.is_linked(account_id, identity):
            logger.warning({"event": "command_denied", "identity": identity, "account_id": account_id})
            raise AccessDeniedError(f"Account {account_id} has no access to {identity}")

    def trigger_feed(self, identity: str, amount: Any, account_id: int | None = None) -> bool:
        """Publish ``{"action": "feed", "amount": amount}``; fire-and-forget."""
        command = build_feed_command(amount)
        self._authorize(identity, account_id)
        return self._bus.publish_command(identity, command)

    def push_schedule(self, identity: str, schedules: Any, account_id: int | None = None) -> bool:
        command = build_schedule_command(normalize_schedules(schedules))
        self._authorize(identity, account_id)
        return self._bus.publish_command(identity, command)

    def save_and_push_schedule(
        self, identity: str, schedules: Any, account_id: int | None = None
    ) -> tuple[list[dict[str, Any]], bool]:
        """Persist the schedule set, then publish exactly what was stored.

        Returns the stored list and whether the publish was handed off.
        """
        if self._schedules is None:
            raise ValidationError("No schedule store configured")
        entries = normalize_schedules(schedules)
        self._authorize(identity, account_id)
        stored = self._schedules.set_schedules(identity, entries)
        published = self._bus.publish_command(identity, build_schedule_command(stored))
        return stored, published


__all__ = ["CommandDispatcher"]
