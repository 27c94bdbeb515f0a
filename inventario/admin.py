from django.contrib import admin
from .models import Repuesto, MovimientoStock

@admin.register(Repuesto)
class RepuestoAdmin(admin.ModelAdmin):
    list_display = ("codigo", "marca", "producto", "stock_disponible", "stock_reservado", "stock_consumido", "stock_minimo", "activo")
    search_fields = ("codigo", "marca", "producto")
    list_filter = ("activo",)

@admin.register(MovimientoStock)
class MovimientoStockAdmin(admin.ModelAdmin):
    list_display = ("repuesto", "tipo", "cantidad", "mantenimiento", "creado_en")
    search_fields = ("repuesto__codigo", "repuesto__producto", "motivo")
    list_filter = ("tipo", "creado_en")
