"""
Domain Errors and the DRF Exception Handler

Services raise CommunityError subclasses; the handler turns them into the
same {"error": ...} shape as every other API error.
"""
from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status
from django.db import IntegrityError
import logging

logger = logging.getLogger(__name__)


class CommunityError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Request could not be completed.'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class Unauthenticated(CommunityError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = 'Login required.'


class SelfVoteForbidden(CommunityError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'You cannot vote on your own content.'


class NotQuestionAuthor(CommunityError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Only the question author can accept an answer.'


class NotCommentAuthor(CommunityError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Only the comment author can delete a comment.'


class ContentNotFound(CommunityError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Content does not exist.'


class AccountNotFound(CommunityError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Account does not exist.'


class VoteConflict(CommunityError):
    """Retry budget exhausted under contention. Safe to resubmit."""
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Your vote could not be recorded. Please try again.'


class NotificationWriteFailed(Exception):
    """
    Logged, never raised to callers: notification delivery is best-effort.
    """

    def __init__(self, recipient_id, event_class):
        super().__init__(
            f"Could not deliver '{event_class}' notification to user {recipient_id}"
        )
        self.recipient_id = recipient_id
        self.event_class = event_class


def custom_exception_handler(exc, context):
    """
    Custom exception handler that:
    1. Logs all exceptions
    2. Converts domain and Django exceptions to DRF responses
    3. Provides consistent error format
    """

    # Call DRF's default exception handler first
    response = exception_handler(exc, context)

    # If DRF handled it, enhance the response
    if response is not None:
        if not isinstance(response.data, dict) or 'error' not in response.data:
            response.data = {
                'error': str(exc),
                'details': response.data
            }
        return response

    if isinstance(exc, CommunityError):
        logger.info(f"{type(exc).__name__}: {exc}")
        return Response({'error': str(exc)}, status=exc.status_code)

    if isinstance(exc, IntegrityError):
        logger.warning(f"IntegrityError: {exc}")
        return Response(
            {'error': 'Data integrity error. This may be a duplicate entry.'},
            status=status.HTTP_409_CONFLICT
        )

    if isinstance(exc, ValueError):
        return Response(
            {'error': str(exc)},
            status=status.HTTP_400_BAD_REQUEST
        )

    # Log unexpected exceptions
    logger.exception(f"Unhandled exception: {exc}")

    return Response(
        {'error': 'An unexpected error occurred.'},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )
