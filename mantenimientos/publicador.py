# mantenimientos/publicador.py
"""
Proyecciones de lectura y publicación posterior al commit.

Cada transición confirmada recalcula completas las dos proyecciones
(calendario de programados y feed de actividades), las empuja a sus
tópicos y deja una notificación durable en el canal del rol que debe
actuar. Nada de esto participa de la transacción: un fallo aquí se
registra en el log y la transición sigue confirmada.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from dateutil.relativedelta import relativedelta
from django.conf import settings
from django.utils import timezone

from core.bus import BusEventos
from core.services import AlmacenNotificaciones
from inventario.services import repuestos_en_minimo
from .models import Mantenimiento, EstadoMantenimiento

logger = logging.getLogger(__name__)

TOPICO_CALENDARIO = "calendarTecnico"
TOPICO_ACTIVIDADES = "Actividades"

DIAS_RETROSPECTIVA_CALENDARIO = 7
MESES_CALENDARIO = 2


@dataclass(frozen=True)
class Aviso:
    canal: str
    titulo: str
    descripcion: str


def _inicio_del_dia(dia):
    return timezone.make_aware(datetime.combine(dia, time.min))


def serializar(m: Mantenimiento) -> dict:
    return {
        "id": str(m.pk),
        "placa": m.placa,
        "tipo": m.tipo,
        "estado": m.estado,
        "fecha": m.fecha.isoformat(),
        "fecha_inicio": m.fecha_inicio.isoformat() if m.fecha_inicio else None,
        "fecha_fin": m.fecha_fin.isoformat() if m.fecha_fin else None,
    }


def calendario_programados(hoy=None) -> list[dict]:
    """Cantidad de mantenimientos programados por día en [hoy, hoy + 2 meses)."""
    hoy = hoy or timezone.localdate()
    desde = _inicio_del_dia(hoy)
    hasta = _inicio_del_dia(hoy + relativedelta(months=MESES_CALENDARIO))
    fechas = (
        Mantenimiento.objects
        .filter(estado=EstadoMantenimiento.PROGRAMADO, fecha__gte=desde, fecha__lt=hasta)
        .values_list("fecha", flat=True)
    )
    conteo = Counter(timezone.localdate(f) for f in fechas)
    return [
        {"dia": dia.strftime("%d/%m/%Y"), "cantidad": cantidad}
        for dia, cantidad in sorted(conteo.items())
    ]


def actividades_desde(dia) -> list[dict]:
    """Mantenimientos con fecha desde el inicio de ``dia`` que no estén expirados."""
    qs = (
        Mantenimiento.objects
        .filter(fecha__gte=_inicio_del_dia(dia))
        .exclude(estado=EstadoMantenimiento.EXPIRADO)
        .order_by("fecha", "id")
    )
    return [serializar(m) for m in qs]


def payload_calendario(hoy=None) -> dict:
    hoy = hoy or timezone.localdate()
    return {
        "calendar": calendario_programados(hoy),
        "mantenimientos": actividades_desde(hoy - timedelta(days=DIAS_RETROSPECTIVA_CALENDARIO)),
    }


class PublicadorEventos:

    def __init__(self, bus: BusEventos, notificaciones=None):
        self.bus = bus
        self.notificaciones = notificaciones or AlmacenNotificaciones()

    def republicar_proyecciones(self, hoy=None):
        hoy = hoy or timezone.localdate()
        self.bus.publicar(TOPICO_CALENDARIO, {TOPICO_CALENDARIO: payload_calendario(hoy)})
        self.bus.publicar(TOPICO_ACTIVIDADES, {TOPICO_ACTIVIDADES: actividades_desde(hoy)})

    def notificar(self, aviso: Aviso, identificador: str):
        notificacion = self.notificaciones.registrar(
            canal=aviso.canal,
            tipo=settings.NOTIFICACION_TIPO,
            identificador=identificador,
            titulo=aviso.titulo,
            descripcion=aviso.descripcion,
            fecha=timezone.now(),
            leida=False,
        )
        self.bus.publicar(aviso.canal, notificacion.como_payload())
        return notificacion

    def publicar(self, mantenimiento_id, aviso: Aviso):
        """Punto de entrada tras el commit. Cada paso falla por separado."""
        try:
            self.republicar_proyecciones()
        except Exception:
            logger.exception(f"No se pudieron republicar proyecciones tras cambio en mantenimiento {mantenimiento_id}")
        try:
            self.notificar(aviso, str(mantenimiento_id))
        except Exception:
            logger.exception(f"No se pudo registrar la notificación '{aviso.titulo}' ({mantenimiento_id})")

    def alertar_stock_bajo(self, codigos, canal: str):
        try:
            for repuesto in repuestos_en_minimo(codigos):
                self.notificar(
                    Aviso(
                        canal=canal,
                        titulo=f"Stock bajo: {repuesto.codigo}",
                        descripcion=(
                            f"{repuesto.producto} en mínimo "
                            f"(disponible {repuesto.stock_disponible} / mínimo {repuesto.stock_minimo})."
                        ),
                    ),
                    repuesto.codigo,
                )
        except Exception:
            logger.exception("No se pudo emitir la alerta de stock bajo")
