from django.db import models


class Canal(models.TextChoices):
    """Canales de notificación por rol; cada uno es también un tópico del bus."""
    ADMIN = "admin", "Administrador"
    TECNICO = "tecnico", "Técnico"
