from django.apps import AppConfig


class MantenimientosConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "mantenimientos"

    def ready(self):
        from . import signals  # noqa: F401
