# mantenimientos/services.py
"""
Motor de mantenimientos.

Cada operación pública valida su entrada, abre una sola UnidadDeTrabajo
que cubre el registro del mantenimiento y el inventario, y devuelve
``Ok(valor)`` o ``Err(error)``. Dentro de la unidad los fallos se lanzan
para que ``atomic`` deshaga todo; solo en la frontera se convierten en
resultados. Publicación, notificación y kilometraje corren después del
commit y nunca lo revierten.
"""

import logging
from datetime import date, datetime, time, timedelta

from django.conf import settings
from django.db import IntegrityError, OperationalError
from django.utils import timezone

from core.bus import construir_bus
from core.errores import (
    ConflictoError,
    MantenimientoError,
    NoEncontradoError,
    TransicionInvalidaError,
    ValidacionError,
)
from core.roles import Canal
from core.transacciones import UnidadDeTrabajo
from flota.registro import RegistroVehiculosORM, normalizar_placa
from inventario.items import ItemRepuesto, normalizar_items
from inventario.services import finalizar_consumo, liberar, verificar_y_reservar
from .decisiones import Aprobar, Decision, Denegar, SolicitarRevision
from .models import (
    ESTADOS_TERMINALES,
    EstadoMantenimiento,
    HistorialEstado,
    Mantenimiento,
    RepuestoAjuste,
    RepuestoSolicitado,
    TipoMantenimiento,
)
from .publicador import Aviso, PublicadorEventos
from .resultados import Err, Ok, Resultado

logger = logging.getLogger(__name__)

E = EstadoMantenimiento

TRANSICIONES_PERMITIDAS = {
    E.PROGRAMADO: {E.PENDIENTE, E.EXPIRADO},
    E.PENDIENTE:  {E.DENEGADO, E.REVISION, E.APROBADO, E.EXPIRADO},
    E.REVISION:   {E.PENDIENTE, E.EXPIRADO},  # re-registro tras corrección
    E.APROBADO:   {E.COMPLETADO, E.EXPIRADO},
    E.DENEGADO:   set(),
    E.COMPLETADO: set(),
    E.EXPIRADO:   set(),
}


def validar_transicion(estado_actual, nuevo_estado) -> bool:
    return nuevo_estado in TRANSICIONES_PERMITIDAS.get(estado_actual, set())


def _exigir_transicion(m: Mantenimiento, nuevo_estado):
    if not validar_transicion(m.estado, nuevo_estado):
        raise TransicionInvalidaError(
            f"Transición inválida: {m.estado} → {nuevo_estado}",
            mantenimiento=m.pk, desde=m.estado, hacia=str(nuevo_estado),
        )


def _como_fecha_hora(valor, campo: str):
    if isinstance(valor, datetime):
        return valor if timezone.is_aware(valor) else timezone.make_aware(valor)
    if isinstance(valor, date):
        return timezone.make_aware(datetime.combine(valor, time.min))
    raise ValidacionError(f"Fecha inválida en {campo}: {valor!r}")


def _validar_km(valor, campo: str):
    if isinstance(valor, bool) or not isinstance(valor, int) or valor < 0:
        raise ValidacionError(f"Kilometraje inválido en {campo}: {valor!r}")
    return valor


def _validar_tipo(tipo):
    if tipo not in TipoMantenimiento.values:
        raise ValidacionError(f"Tipo de mantenimiento desconocido: {tipo!r}")
    return tipo


def _abrir_historial(m: Mantenimiento, observaciones: str = ""):
    HistorialEstado.objects.create(mantenimiento=m, estado=m.estado, observaciones=observaciones)


def _cambiar_estado(m: Mantenimiento, nuevo_estado, observaciones: str = ""):
    """Valida la arista, cierra el tramo abierto del historial y abre el nuevo."""
    _exigir_transicion(m, nuevo_estado)
    HistorialEstado.objects.filter(mantenimiento=m, fin__isnull=True).update(fin=timezone.now())
    m.estado = nuevo_estado
    m.save()
    _abrir_historial(m, observaciones)


class MotorMantenimientos:
    """
    Orquestador del ciclo de vida de un mantenimiento.

    Sus colaboradores se inyectan; por defecto usa el bus configurado en
    EVENT_BACKEND y el registro de vehículos sobre el ORM.
    """

    def __init__(self, bus=None, registro=None, notificaciones=None, publicador=None):
        self.bus = bus or construir_bus()
        self.registro = registro or RegistroVehiculosORM()
        self.publicador = publicador or PublicadorEventos(self.bus, notificaciones)

    # ------------------------------------------------------------------ frontera

    def _ejecutar(self, operacion: str, funcion, *args, **kwargs) -> Resultado:
        try:
            valor = funcion(*args, **kwargs)
        except MantenimientoError as e:
            logger.warning(f"{operacion} rechazado [{e.codigo}]: {e.mensaje}")
            return Err(e)
        except (OperationalError, IntegrityError) as e:
            logger.warning(f"{operacion} en conflicto con otra transacción: {e}")
            return Err(ConflictoError(f"Conflicto concurrente en {operacion}; reintente.", causa=str(e)))
        return Ok(valor)

    def _publicar_al_confirmar(self, uow: UnidadDeTrabajo, m: Mantenimiento, aviso: Aviso):
        mantenimiento_id = m.pk
        uow.al_confirmar(lambda: self.publicador.publicar(mantenimiento_id, aviso))

    def _actualizar_km(self, placa: str, km: int):
        try:
            self.registro.actualizar_km(placa, km)
        except Exception:
            logger.exception(f"No se pudo actualizar el kilometraje de {placa} a {km}")

    def _bloquear(self, mantenimiento_id) -> Mantenimiento:
        try:
            return Mantenimiento.objects.select_for_update().get(pk=mantenimiento_id)
        except (Mantenimiento.DoesNotExist, ValueError, TypeError):
            raise NoEncontradoError(f"Mantenimiento {mantenimiento_id} no existe", mantenimiento=mantenimiento_id)

    # ------------------------------------------------------------------ programar

    def programar(self, placa: str, tipo: str, fecha) -> Resultado:
        """Crea un mantenimiento en Programado. Devuelve su id."""
        return self._ejecutar("programar", self._programar, placa, tipo, fecha)

    def _programar(self, placa, tipo, fecha):
        placa = normalizar_placa(placa)
        _validar_tipo(tipo)
        fecha = _como_fecha_hora(fecha, "fecha")
        if not self.registro.existe(placa):
            raise NoEncontradoError(f"Vehículo {placa} no existe", placa=placa)

        with UnidadDeTrabajo() as uow:
            m = Mantenimiento.objects.create(placa=placa, tipo=tipo, fecha=fecha, estado=E.PROGRAMADO)
            _abrir_historial(m)
            self._publicar_al_confirmar(uow, m, Aviso(
                Canal.ADMIN,
                "Mantenimiento programado",
                f"Se ha programado un mantenimiento para el vehículo con placa {placa}",
            ))

        logger.info(f"Mantenimiento {m.pk} programado para {placa} el {fecha:%d/%m/%Y}")
        return m.pk

    # ------------------------------------------------------------------ registrar

    def registrar_ejecutado(self, repuestos, km_medido: int, mantenimiento_id=None, placa: str = None,
                            tipo: str = None, fecha=None, fecha_inicio=None, km_previo: int = None) -> Resultado:
        """
        Registra un mantenimiento ejecutado y lo deja en Pendiente.

        Con ``mantenimiento_id`` avanza uno existente (Programado, o Revision
        tras corrección); sin él crea uno nuevo para ``placa`` y ``tipo``.
        Reserva todos los repuestos o ninguno. Devuelve el id.
        """
        return self._ejecutar(
            "registrar", self._registrar_ejecutado, repuestos, km_medido,
            mantenimiento_id, placa, tipo, fecha, fecha_inicio, km_previo,
        )

    def _registrar_ejecutado(self, repuestos, km_medido, mantenimiento_id, placa, tipo, fecha,
                             fecha_inicio, km_previo):
        items = normalizar_items(repuestos)
        _validar_km(km_medido, "km_medido")
        if km_previo is not None:
            _validar_km(km_previo, "km_previo")
        fecha_inicio = _como_fecha_hora(fecha_inicio, "fecha_inicio") if fecha_inicio else timezone.now()
        if mantenimiento_id is None:
            placa = normalizar_placa(placa)
            _validar_tipo(tipo)
            fecha = _como_fecha_hora(fecha, "fecha") if fecha else fecha_inicio
            if not self.registro.existe(placa):
                raise NoEncontradoError(f"Vehículo {placa} no existe", placa=placa)

        with UnidadDeTrabajo() as uow:
            if mantenimiento_id is None:
                m = Mantenimiento(placa=placa, tipo=tipo, fecha=fecha, estado=E.PENDIENTE)
            else:
                m = self._bloquear(mantenimiento_id)
                _exigir_transicion(m, E.PENDIENTE)

            if km_previo is None:
                # tras una revisión el registro ya tiene el km_medido anterior de esta misma orden
                km_previo = m.km_previo
            if km_previo is None:
                km_previo = self.registro.buscar_por_placa(m.placa)["km_actual"]
            if km_medido < km_previo:
                raise ValidacionError(
                    f"El kilometraje medido ({km_medido}) es menor al anterior ({km_previo})",
                    placa=m.placa,
                )

            m.fecha_inicio = fecha_inicio
            m.km_medido = km_medido
            m.km_previo = km_previo
            if m.pk is None:
                m.save()
                _abrir_historial(m)
            else:
                _cambiar_estado(m, E.PENDIENTE)

            verificar_y_reservar(uow, items, m)
            m.repuestos.all().delete()
            RepuestoSolicitado.objects.bulk_create([
                RepuestoSolicitado(mantenimiento=m, codigo=i.id, marca=i.marca, producto=i.producto,
                                   cantidad=i.cantidad)
                for i in items
            ])

            placa_final = m.placa
            uow.al_confirmar(lambda: self._actualizar_km(placa_final, km_medido))
            self._publicar_al_confirmar(uow, m, Aviso(
                Canal.ADMIN,
                "Mantenimiento Registrado",
                f"Se ha registrado un mantenimiento para el vehículo con placa {placa_final}",
            ))
            codigos = [i.id for i in items]
            uow.al_confirmar(lambda: self.publicador.alertar_stock_bajo(codigos, Canal.ADMIN))

        logger.info(f"Mantenimiento {m.pk} registrado ({len(items)} repuestos reservados)")
        return m.pk

    # ------------------------------------------------------------------ decidir

    def decidir(self, mantenimiento_id, decision: Decision) -> Resultado:
        """Denegar, solicitar revisión o aprobar un mantenimiento Pendiente."""
        return self._ejecutar("decidir", self._decidir, mantenimiento_id, decision)

    def _decidir(self, mantenimiento_id, decision):
        if isinstance(decision, Aprobar):
            ajustes = normalizar_items(decision.ajustes, permitir_vacio=True)
            sin_precio = [i.id for i in ajustes if i.precio is None]
            if sin_precio:
                raise ValidacionError(f"Falta el precio de: {', '.join(sin_precio)}", repuestos=sin_precio)
        elif not isinstance(decision, (Denegar, SolicitarRevision)):
            raise ValidacionError(f"Decisión desconocida: {decision!r}")

        with UnidadDeTrabajo() as uow:
            m = self._bloquear(mantenimiento_id)

            if isinstance(decision, Denegar):
                _exigir_transicion(m, E.DENEGADO)
                liberar(uow, m.items_solicitados(), m, motivo="Mantenimiento denegado")
                m.cambios_solicitados = decision.cambios_solicitados
                _cambiar_estado(m, E.DENEGADO, decision.cambios_solicitados)
                aviso = Aviso(
                    Canal.TECNICO,
                    "Mantenimiento Denegado",
                    f"Se ha denegado el mantenimiento para el vehículo con placa {m.placa}",
                )
            elif isinstance(decision, SolicitarRevision):
                _exigir_transicion(m, E.REVISION)
                liberar(uow, m.items_solicitados(), m, motivo="Revisión solicitada")
                m.cambios_solicitados = decision.cambios_solicitados
                _cambiar_estado(m, E.REVISION, decision.cambios_solicitados)
                aviso = Aviso(
                    Canal.TECNICO,
                    "Mantenimiento en Revisión",
                    f"Se han solicitado correcciones en el mantenimiento a realizar al vehículo con placa {m.placa}",
                )
            else:
                _exigir_transicion(m, E.APROBADO)
                self._conciliar_reserva(uow, m, ajustes)
                m.repuestos_ajuste.all().delete()
                RepuestoAjuste.objects.bulk_create([
                    RepuestoAjuste(mantenimiento=m, codigo=i.id, marca=i.marca, producto=i.producto,
                                   cantidad=i.cantidad, precio=i.precio)
                    for i in ajustes
                ])
                _cambiar_estado(m, E.APROBADO)
                aviso = Aviso(
                    Canal.TECNICO,
                    "Mantenimiento Aprobado",
                    f"Se ha aprobado el mantenimiento para el vehículo con placa {m.placa}",
                )

            self._publicar_al_confirmar(uow, m, aviso)

        logger.info(f"Mantenimiento {m.pk} → {m.estado}")
        return m

    def _conciliar_reserva(self, uow, m: Mantenimiento, ajustes: list[ItemRepuesto]):
        """Deja reservado exactamente lo aprobado: reserva la diferencia o libera el sobrante."""
        reservado = {i.id: i.cantidad for i in m.items_solicitados()}
        final = {i.id: i.cantidad for i in ajustes}
        extra = [
            ItemRepuesto(c, final[c] - reservado.get(c, 0))
            for c in sorted(final) if final[c] > reservado.get(c, 0)
        ]
        sobrante = [
            ItemRepuesto(c, reservado[c] - final.get(c, 0))
            for c in sorted(reservado) if reservado[c] > final.get(c, 0)
        ]
        verificar_y_reservar(uow, extra, m)
        liberar(uow, sobrante, m, motivo="Ajuste en aprobación")

    # ------------------------------------------------------------------ completar

    def completar(self, mantenimiento_id, diagnostico_final: str, fecha_fin=None) -> Resultado:
        """Aprobado → Completado: consume definitivamente lo ajustado."""
        return self._ejecutar("completar", self._completar, mantenimiento_id, diagnostico_final, fecha_fin)

    def _completar(self, mantenimiento_id, diagnostico_final, fecha_fin):
        if not (diagnostico_final or "").strip():
            raise ValidacionError("El diagnóstico final es obligatorio")
        fecha_fin = _como_fecha_hora(fecha_fin, "fecha_fin") if fecha_fin else timezone.now()

        with UnidadDeTrabajo() as uow:
            m = self._bloquear(mantenimiento_id)
            _exigir_transicion(m, E.COMPLETADO)
            finalizar_consumo(uow, m.items_ajuste(), m)
            m.diagnostico_final = diagnostico_final.strip()
            m.fecha_fin = fecha_fin
            _cambiar_estado(m, E.COMPLETADO)
            self._publicar_al_confirmar(uow, m, Aviso(
                Canal.ADMIN,
                "Mantenimiento Completado",
                f"Se ha completado el mantenimiento para el vehículo con placa {m.placa}",
            ))

        logger.info(f"Mantenimiento {m.pk} completado; costo {m.costo_total}")
        return m

    # ------------------------------------------------------------------ expirar

    def expirar(self, mantenimiento_id) -> Resultado:
        """Cualquier estado no terminal → Expirado, liberando la reserva que aún tenga."""
        return self._ejecutar("expirar", self._expirar, mantenimiento_id)

    def _expirar(self, mantenimiento_id):
        with UnidadDeTrabajo() as uow:
            m = self._bloquear(mantenimiento_id)
            _exigir_transicion(m, E.EXPIRADO)
            if m.estado == E.PENDIENTE:
                liberar(uow, m.items_solicitados(), m, motivo="Mantenimiento expirado")
            elif m.estado == E.APROBADO:
                liberar(uow, m.items_ajuste(), m, motivo="Mantenimiento expirado")
            _cambiar_estado(m, E.EXPIRADO)
            self._publicar_al_confirmar(uow, m, Aviso(
                Canal.ADMIN,
                "Mantenimiento Expirado",
                f"El mantenimiento para el vehículo con placa {m.placa} ha expirado",
            ))

        logger.info(f"Mantenimiento {m.pk} expirado")
        return m

    def expirar_vencidos(self, dias: int = None, ahora=None) -> list[Resultado]:
        """Expira los no terminales cuya fecha programada supera el umbral de antigüedad."""
        if dias is None:
            dias = settings.MANTENIMIENTO_DIAS_EXPIRACION
        limite = (ahora or timezone.now()) - timedelta(days=dias)
        ids = list(
            Mantenimiento.objects
            .filter(fecha__lt=limite)
            .exclude(estado__in=ESTADOS_TERMINALES)
            .order_by("fecha", "id")
            .values_list("id", flat=True)
        )
        resultados = [self.expirar(pk) for pk in ids]
        logger.info(
            f"Expiración: {sum(r.ok for r in resultados)} de {len(ids)} mantenimientos "
            f"con fecha anterior a {limite:%d/%m/%Y %H:%M}"
        )
        return resultados


# ---------------------------------------------------------------------- consultas

def obtener_mantenimiento(mantenimiento_id) -> Mantenimiento:
    try:
        return Mantenimiento.objects.prefetch_related("repuestos", "repuestos_ajuste").get(pk=mantenimiento_id)
    except (Mantenimiento.DoesNotExist, ValueError, TypeError):
        raise NoEncontradoError(f"Mantenimiento {mantenimiento_id} no existe", mantenimiento=mantenimiento_id)


def mantenimientos_por_placa(placa: str) -> list[Mantenimiento]:
    return list(Mantenimiento.objects.filter(placa=normalizar_placa(placa)).order_by("-fecha"))


def mantenimientos_por_estado(estado: str, dia=None) -> list[Mantenimiento]:
    if estado not in EstadoMantenimiento.values:
        raise ValidacionError(f"Estado desconocido: {estado!r}")
    qs = Mantenimiento.objects.filter(estado=estado)
    if dia is not None:
        desde = timezone.make_aware(datetime.combine(dia, time.min))
        qs = qs.filter(fecha__gte=desde, fecha__lt=desde + timedelta(days=1))
    return list(qs.order_by("fecha", "id"))
