# inventario/services.py
"""
Protocolo de reserva de repuestos.

Las tres operaciones exigen una UnidadDeTrabajo abierta: bloquean las
filas afectadas, validan todo antes de escribir y mueven cantidades con
UPDATE condicionales, de modo que disponible, reservado y consumido
nunca quedan negativos.
"""

import logging

from django.db.models import F

from core.errores import (
    ConflictoError,
    InvarianteInventarioError,
    NoEncontradoError,
    StockInsuficienteError,
    ValidacionError,
)
from core.transacciones import UnidadDeTrabajo
from .items import ItemRepuesto
from .models import Repuesto, MovimientoStock

logger = logging.getLogger(__name__)


def _bloquear(items: list[ItemRepuesto]) -> dict[str, Repuesto]:
    codigos = sorted({i.id for i in items})
    # orden fijo de bloqueo para que dos reservas concurrentes no se crucen
    repuestos = {
        r.codigo: r
        for r in Repuesto.objects.select_for_update().filter(codigo__in=codigos).order_by("codigo")
    }
    faltantes = [c for c in codigos if c not in repuestos]
    if faltantes:
        raise NoEncontradoError(f"Repuestos no existen: {', '.join(faltantes)}", repuestos=faltantes)
    return repuestos


def _mover(repuesto: Repuesto, cantidad: int, desde: str, hacia: str | None, tipo: str,
           mantenimiento=None, motivo: str = "") -> bool:
    cambios = {desde: F(desde) - cantidad}
    if hacia:
        cambios[hacia] = F(hacia) + cantidad
    actualizados = (
        Repuesto.objects
        .filter(pk=repuesto.pk, **{f"{desde}__gte": cantidad})
        .update(**cambios)
    )
    if not actualizados:
        return False
    MovimientoStock.objects.create(
        repuesto=repuesto, tipo=tipo, cantidad=cantidad,
        mantenimiento=mantenimiento, motivo=motivo,
    )
    return True


def verificar_y_reservar(uow: UnidadDeTrabajo, items, mantenimiento=None) -> list[ItemRepuesto]:
    """
    Reserva todos los items o ninguno.

    Si algún repuesto no alcanza, lanza StockInsuficienteError sin tocar
    el inventario; la unidad de trabajo que lo contiene se deshace entera.
    """
    uow.exigir_activa()
    items = [i for i in items if i.cantidad > 0]
    if not items:
        return []
    repuestos = _bloquear(items)

    insuficientes = [
        {"id": i.id, "solicitado": i.cantidad, "disponible": repuestos[i.id].stock_disponible}
        for i in items
        if repuestos[i.id].stock_disponible < i.cantidad
    ]
    if insuficientes:
        raise StockInsuficienteError(
            "Stock insuficiente para: " + ", ".join(f["id"] for f in insuficientes),
            faltantes=insuficientes,
        )

    for item in items:
        if not _mover(repuestos[item.id], item.cantidad, "stock_disponible", "stock_reservado",
                      MovimientoStock.RESERVA, mantenimiento):
            # otra transacción consumió el stock entre la verificación y el UPDATE
            raise ConflictoError(f"El stock de {item.id} cambió durante la reserva", repuesto=item.id)

    logger.info(f"Reservados {len(items)} repuestos" + (f" para mantenimiento {mantenimiento.pk}" if mantenimiento else ""))
    return items


def liberar(uow: UnidadDeTrabajo, items, mantenimiento=None, motivo: str = "") -> list[ItemRepuesto]:
    """Devuelve cantidades reservadas al stock disponible."""
    uow.exigir_activa()
    items = [i for i in items if i.cantidad > 0]
    if not items:
        return []
    repuestos = _bloquear(items)
    for item in items:
        if not _mover(repuestos[item.id], item.cantidad, "stock_reservado", "stock_disponible",
                      MovimientoStock.LIBERACION, mantenimiento, motivo):
            raise InvarianteInventarioError(
                f"Liberar {item.cantidad} de {item.id} dejaría la reserva negativa"
            )
    logger.info(f"Liberados {len(items)} repuestos" + (f" del mantenimiento {mantenimiento.pk}" if mantenimiento else ""))
    return items


def finalizar_consumo(uow: UnidadDeTrabajo, items, mantenimiento=None) -> list[ItemRepuesto]:
    """Pasa cantidades de reservado a consumido. El disponible no cambia."""
    uow.exigir_activa()
    items = [i for i in items if i.cantidad > 0]
    if not items:
        return []
    repuestos = _bloquear(items)
    for item in items:
        if not _mover(repuestos[item.id], item.cantidad, "stock_reservado", "stock_consumido",
                      MovimientoStock.CONSUMO, mantenimiento):
            raise InvarianteInventarioError(
                f"Consumir {item.cantidad} de {item.id} excede lo reservado"
            )
    logger.info(f"Consumo finalizado de {len(items)} repuestos" + (f" en mantenimiento {mantenimiento.pk}" if mantenimiento else ""))
    return items


def ingresar_stock(uow: UnidadDeTrabajo, codigo: str, cantidad: int, motivo: str = "Compra") -> Repuesto:
    """Entrada de stock comprado; es la única operación que aumenta el total."""
    uow.exigir_activa()
    if isinstance(cantidad, bool) or not isinstance(cantidad, int) or cantidad <= 0:
        raise ValidacionError(f"Cantidad de entrada inválida: {cantidad!r}")
    repuesto = _bloquear([ItemRepuesto(codigo, cantidad)])[codigo]
    Repuesto.objects.filter(pk=repuesto.pk).update(stock_disponible=F("stock_disponible") + cantidad)
    MovimientoStock.objects.create(repuesto=repuesto, tipo=MovimientoStock.ENTRADA, cantidad=cantidad, motivo=motivo)
    repuesto.refresh_from_db()
    logger.info(f"Entrada de {cantidad} x {codigo}, disponible: {repuesto.stock_disponible}")
    return repuesto


def repuestos_en_minimo(codigos) -> list[Repuesto]:
    return [r for r in Repuesto.objects.filter(codigo__in=list(codigos), activo=True) if r.en_minimo]
