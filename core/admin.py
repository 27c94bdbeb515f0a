from django.contrib import admin
from .models import Notificacion, AuditLog

@admin.register(Notificacion)
class NotificacionAdmin(admin.ModelAdmin):
    list_display = ("id", "canal", "tipo", "identificador", "titulo", "fecha", "leida")
    list_filter = ("canal", "leida")
    search_fields = ("titulo", "identificador")

@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("ts", "app", "action", "object_repr")
    list_filter = ("app", "action")
