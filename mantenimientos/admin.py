from django.contrib import admin
from .models import Mantenimiento, RepuestoSolicitado, RepuestoAjuste, HistorialEstado


class RepuestoSolicitadoInline(admin.TabularInline):
    model = RepuestoSolicitado
    extra = 0


class RepuestoAjusteInline(admin.TabularInline):
    model = RepuestoAjuste
    extra = 0


class HistorialEstadoInline(admin.TabularInline):
    model = HistorialEstado
    extra = 0
    readonly_fields = ("estado", "inicio", "fin", "observaciones")


@admin.register(Mantenimiento)
class MantenimientoAdmin(admin.ModelAdmin):
    list_display = ("id", "placa", "tipo", "estado", "fecha", "fecha_inicio", "fecha_fin")
    search_fields = ("placa", "diagnostico_final")
    list_filter = ("estado", "tipo", "fecha")
    # el estado solo cambia a través del motor
    readonly_fields = ("estado", "creado_en", "actualizado_en")
    inlines = [RepuestoSolicitadoInline, RepuestoAjusteInline, HistorialEstadoInline]
