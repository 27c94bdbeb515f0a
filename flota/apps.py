from django.apps import AppConfig


class FlotaConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "flota"
    verbose_name = "Flota"
