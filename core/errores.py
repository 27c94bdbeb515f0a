# core/errores.py
"""
Errores del dominio de mantenimientos.

Los subtipos de MantenimientoError abortan la unidad de trabajo que los
contiene y llegan al llamador como Err(...). InvarianteInventarioError
no pertenece a esa jerarquía: indica un estado de stock imposible y
debe propagarse tal cual.
"""


class MantenimientoError(Exception):
    """Base de los fallos tipados que devuelve el motor."""
    codigo = "error"

    def __init__(self, mensaje: str = "", **detalle):
        super().__init__(mensaje)
        self.mensaje = mensaje
        self.detalle = detalle


class ValidacionError(MantenimientoError):
    """Entrada vacía, duplicada o mal formada. Se rechaza antes de abrir la transacción."""
    codigo = "validacion"


class NoEncontradoError(MantenimientoError):
    """Placa, mantenimiento o repuesto inexistente."""
    codigo = "no_encontrado"


class StockInsuficienteError(MantenimientoError):
    """Algún repuesto no tiene stock disponible suficiente."""
    codigo = "stock_insuficiente"


class ConflictoError(MantenimientoError):
    """Colisión con otra transacción sobre el mismo registro o repuesto. Se puede reintentar."""
    codigo = "conflicto"


class TransicionInvalidaError(MantenimientoError):
    """El estado actual no admite la transición pedida."""
    codigo = "transicion_invalida"


class InvarianteInventarioError(RuntimeError):
    """Un movimiento dejaría cantidades negativas en el inventario."""
