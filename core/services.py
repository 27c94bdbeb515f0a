import logging

from django.db import transaction
from django.utils import timezone

from .errores import NoEncontradoError
from .models import Notificacion

logger = logging.getLogger(__name__)


def notificar(canal: str, tipo: str, identificador: str, titulo: str, descripcion: str = "",
              fecha=None, leida: bool = False) -> Notificacion:
    return Notificacion.objects.create(
        canal=canal,
        tipo=tipo,
        identificador=identificador,
        titulo=titulo,
        descripcion=descripcion,
        fecha=fecha or timezone.now(),
        leida=leida,
    )


def no_leidas(canal: str) -> list[Notificacion]:
    return list(Notificacion.objects.filter(canal=canal, leida=False).order_by("-fecha"))


@transaction.atomic
def marcar_leida(notificacion_id: int) -> Notificacion:
    actualizadas = Notificacion.objects.filter(pk=notificacion_id).update(leida=True)
    if not actualizadas:
        raise NoEncontradoError(f"Notificación {notificacion_id} no existe")
    return Notificacion.objects.get(pk=notificacion_id)


class AlmacenNotificaciones:
    """Registro durable de notificaciones, inyectable en el publicador."""

    def registrar(self, canal, tipo, identificador, titulo, descripcion, fecha=None, leida=False):
        notificacion = notificar(canal, tipo, identificador, titulo, descripcion, fecha, leida)
        logger.debug(f"Notificación {notificacion.pk} registrada en canal {canal}")
        return notificacion

    def no_leidas(self, canal):
        return no_leidas(canal)
