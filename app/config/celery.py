"""
Celery configuration for the settlement service.

Celery runs the periodic settlement pass (scheduled by django-celery-beat)
and per-pair fee charge and payout tasks. Redis is both the message broker
and the result backend. Tasks are auto-discovered from installed apps.

Usage:
    from settlements.tasks import run_settlement_cycle

    run_settlement_cycle.delay()

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()
