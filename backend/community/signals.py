"""
Django Signals

Every User gets an Account (points + notification preferences) the moment it
is created, so the vote ledger and the notification fan-out can rely on one
existing.

NOTE: post_save does NOT fire for bulk_create(). Users created that way need
their accounts created explicitly.
"""

from django.contrib.auth.models import User
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import Account


@receiver(post_save, sender=User)
def create_account(sender, instance, created, **kwargs):
    if created:
        Account.objects.get_or_create(user=instance)
