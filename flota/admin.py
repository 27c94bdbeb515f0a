from django.contrib import admin
from .models import Vehiculo

@admin.register(Vehiculo)
class VehiculoAdmin(admin.ModelAdmin):
    list_display = ("placa", "cliente", "marca", "modelo", "km_actual", "fecha_soat")
    search_fields = ("placa", "cliente", "propietario")
