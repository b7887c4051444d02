"""
Settlements app configuration.

Signal receivers for outbound events and cache invalidation are connected
in ready().
"""

from django.apps import AppConfig


class SettlementsConfig(AppConfig):
    """Configuration for the settlements application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "settlements"
    verbose_name = "Settlements"

    def ready(self) -> None:
        from settlements import handlers  # noqa: F401
