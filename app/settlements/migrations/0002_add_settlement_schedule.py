"""
Add celery-beat schedule for the settlement run.

This migration creates the periodic task for run_settlement_cycle, which
runs every 15 minutes to create confirmations, advance due cycles, charge
platform fees and disburse payouts.
"""

from django.db import migrations

TASK_NAME = "Run Settlement Cycle"


def create_periodic_task(apps, schema_editor):
    """Create the periodic task for the settlement run."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = IntervalSchedule.objects.get_or_create(
        every=15,
        period="minutes",
    )

    PeriodicTask.objects.get_or_create(
        name=TASK_NAME,
        defaults={
            "task": "settlements.tasks.run_settlement_cycle",
            "interval": schedule,
            "enabled": True,
            "description": (
                "Creates confirmations for finished appointments, advances cycles "
                "past their cutoff, charges platform fees and disburses payouts."
            ),
        },
    )


def remove_periodic_task(apps, schema_editor):
    """Remove the periodic task on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name=TASK_NAME).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("settlements", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]
