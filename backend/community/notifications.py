"""
Notification Fan-out
====================

Authoring actions (comment, answer, accepted answer) and received upvotes
create notifications for the affected user, if that user's preferences allow
the event class.

DELIVERY GUARANTEES:
--------------------
Best-effort and synchronous. notify_if_enabled() never raises because of a
database problem and never retries: a failed write is logged and dropped.
It runs in its own savepoint, so even when called inside somebody else's
transaction a failure cannot poison or roll back the caller's writes.

An optional event_key (e.g. "comment:42") makes delivery idempotent: the
second call for the same recipient and key returns the existing row.

READ STATE:
-----------
    Unread --(list opened / mark all read)--> Read

Read is terminal; nothing ever flips a notification back to unread.
"""

import logging
from typing import Iterable, Optional

from django.db import DatabaseError, IntegrityError, transaction

from .exceptions import AccountNotFound, NotificationWriteFailed
from .models import Account, Notification

logger = logging.getLogger(__name__)

EVENT_CLASSES = frozenset(Notification.EventClass.values)


def _check_event_class(event_class: str):
    if event_class not in EVENT_CLASSES:
        raise ValueError(f"Invalid event class: {event_class}")


def is_enabled(preferences: dict, event_class: str) -> bool:
    """Missing flags default to enabled."""
    return bool(preferences.get(event_class, True))


def notify_if_enabled(
    recipient_id: Optional[int],
    event_class: str,
    message: str,
    link: str = '',
    event_key: Optional[str] = None
) -> Optional[Notification]:
    """
    Create one unread notification for `recipient_id` unless they turned
    `event_class` off.

    Returns the notification, or None when nothing was delivered.
    """
    _check_event_class(event_class)
    if recipient_id is None:
        return None

    try:
        with transaction.atomic():
            preferences = (
                Account.objects
                .filter(user_id=recipient_id)
                .values_list('notification_preferences', flat=True)
                .first()
            ) or {}
            if not is_enabled(preferences, event_class):
                logger.debug(f"User {recipient_id} has '{event_class}' notifications off")
                return None

            if event_key is not None:
                existing = Notification.objects.filter(
                    recipient_id=recipient_id,
                    event_key=event_key
                ).first()
                if existing is not None:
                    return existing

            return Notification.objects.create(
                recipient_id=recipient_id,
                kind=event_class,
                message=message[:500],
                link=link,
                event_key=event_key
            )
    except IntegrityError:
        if event_key is not None:
            # Same event delivered concurrently; the other write won
            existing = Notification.objects.filter(
                recipient_id=recipient_id,
                event_key=event_key
            ).first()
            if existing is not None:
                return existing
        logger.exception(str(NotificationWriteFailed(recipient_id, event_class)))
    except DatabaseError:
        logger.exception(str(NotificationWriteFailed(recipient_id, event_class)))
    return None


def list_notifications(recipient_id: int, unread_only: bool = False, limit: Optional[int] = None) -> list:
    """Newest first."""
    queryset = Notification.objects.filter(recipient_id=recipient_id).order_by('-created_at', '-id')
    if unread_only:
        queryset = queryset.filter(is_read=False)
    if limit is not None:
        queryset = queryset[:limit]
    return list(queryset)


def unread_count(recipient_id: int) -> int:
    return Notification.objects.filter(recipient_id=recipient_id, is_read=False).count()


def mark_read(recipient_id: int, notification_ids: Iterable[int]) -> int:
    """
    Mark the given notifications read, e.g. the ones just shown to the
    recipient. Other users' notifications are never touched.

    Returns how many moved from unread to read.
    """
    return Notification.objects.filter(
        recipient_id=recipient_id,
        id__in=list(notification_ids),
        is_read=False
    ).update(is_read=True)


def mark_all_read(recipient_id: int) -> int:
    return Notification.objects.filter(
        recipient_id=recipient_id,
        is_read=False
    ).update(is_read=True)


def get_preferences(recipient_id: int) -> dict:
    """Every event class with its effective flag."""
    account = Account.objects.filter(user_id=recipient_id).first()
    if account is None:
        raise AccountNotFound(f"Account for user {recipient_id} does not exist")
    return {
        event_class: is_enabled(account.notification_preferences, event_class)
        for event_class in Notification.EventClass.values
    }


def update_preferences(recipient_id: int, changes: dict) -> dict:
    """
    Merge boolean flags into the stored preferences.

    Unknown event classes and non-boolean values raise ValueError before
    anything is written.
    """
    for event_class, enabled in changes.items():
        _check_event_class(event_class)
        if not isinstance(enabled, bool):
            raise ValueError(f"Preference '{event_class}' must be true or false")

    with transaction.atomic():
        account = Account.objects.select_for_update().filter(user_id=recipient_id).first()
        if account is None:
            raise AccountNotFound(f"Account for user {recipient_id} does not exist")
        account.notification_preferences = {**account.notification_preferences, **changes}
        account.save(update_fields=['notification_preferences'])

    return get_preferences(recipient_id)
