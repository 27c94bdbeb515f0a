# flota/registro.py
"""
Registro de vehículos visto desde el motor de mantenimientos.

El motor solo conoce esta interfaz: existencia, ficha por placa y
actualización del kilometraje. La actualización de kilometraje corre
fuera de la transacción de inventario.
"""

import logging

from core.errores import NoEncontradoError
from .models import Vehiculo

logger = logging.getLogger(__name__)


def normalizar_placa(placa: str) -> str:
    return (placa or "").strip().upper()


class RegistroVehiculos:

    def existe(self, placa: str) -> bool:
        raise NotImplementedError

    def buscar_por_placa(self, placa: str) -> dict:
        raise NotImplementedError

    def actualizar_km(self, placa: str, km: int) -> None:
        raise NotImplementedError


class RegistroVehiculosORM(RegistroVehiculos):
    """Implementación sobre el modelo Vehiculo."""

    def existe(self, placa):
        return Vehiculo.objects.filter(placa=normalizar_placa(placa)).exists()

    def buscar_por_placa(self, placa):
        try:
            v = Vehiculo.objects.get(placa=normalizar_placa(placa))
        except Vehiculo.DoesNotExist:
            raise NoEncontradoError(f"Vehículo {placa} no existe", placa=placa)
        return {
            "placa": v.placa,
            "cliente": v.cliente,
            "propietario": v.propietario,
            "fecha_soat": v.fecha_soat,
            "km_registro_inicial": v.km_registro_inicial,
            "km_actual": v.km_actual,
        }

    def actualizar_km(self, placa, km):
        actualizados = Vehiculo.objects.filter(placa=normalizar_placa(placa)).update(km_actual=km)
        if not actualizados:
            raise NoEncontradoError(f"Vehículo {placa} no existe", placa=placa)
        logger.info(f"Kilometraje de {normalizar_placa(placa)} actualizado a {km}")
