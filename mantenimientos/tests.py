from collections import defaultdict
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.db import OperationalError
from django.test import TestCase
from django.utils import timezone

from core.bus import BusEventos, BusSenales
from core.errores import NoEncontradoError
from core.models import Notificacion
from flota.models import Vehiculo
from flota.registro import RegistroVehiculosORM
from inventario import services as inventario_services
from inventario.items import ItemRepuesto
from inventario.models import MovimientoStock, Repuesto
from inventario.tests import bloquear_y_drenar
from mantenimientos.decisiones import Aprobar, Denegar, SolicitarRevision
from mantenimientos.models import EstadoMantenimiento, HistorialEstado, Mantenimiento, TipoMantenimiento
from mantenimientos.publicador import actividades_desde, calendario_programados
from mantenimientos.services import (
    MotorMantenimientos,
    mantenimientos_por_estado,
    mantenimientos_por_placa,
    obtener_mantenimiento,
    validar_transicion,
)

E = EstadoMantenimiento


class BaseMotorTestCase(TestCase):
    def setUp(self):
        Vehiculo.objects.create(placa="ABC-123", cliente="Transportes Lima", km_registro_inicial=1000, km_actual=1000)
        self.p1 = Repuesto.objects.create(codigo="P1", producto="Filtro de aceite", stock_disponible=5)
        self.p2 = Repuesto.objects.create(codigo="P2", producto="Pastillas de freno", stock_disponible=4)

        self.bus = BusSenales()
        self.recibidos = defaultdict(list)
        for topico in ("calendarTecnico", "Actividades", "admin", "tecnico"):
            self.bus.suscribir(topico, self.recibidos[topico].append)
        self.motor = MotorMantenimientos(bus=self.bus)
        self.manana = timezone.localdate() + timedelta(days=1)

    def programar(self, fecha=None):
        with self.captureOnCommitCallbacks(execute=True):
            r = self.motor.programar("ABC-123", TipoMantenimiento.PREVENTIVO, fecha or self.manana)
        self.assertTrue(r.ok, r)
        return r.valor

    def registrar(self, mantenimiento_id, repuestos=None, km=1500):
        with self.captureOnCommitCallbacks(execute=True):
            return self.motor.registrar_ejecutado(
                repuestos if repuestos is not None else [{"id": "P1", "cantidad": 2}],
                km,
                mantenimiento_id=mantenimiento_id,
            )

    def decidir(self, mantenimiento_id, decision):
        with self.captureOnCommitCallbacks(execute=True):
            return self.motor.decidir(mantenimiento_id, decision)

    def estado(self, mantenimiento_id):
        return Mantenimiento.objects.get(pk=mantenimiento_id).estado

    def assertStock(self, repuesto, disponible, reservado, consumido=0):
        repuesto.refresh_from_db()
        self.assertEqual(
            (repuesto.stock_disponible, repuesto.stock_reservado, repuesto.stock_consumido),
            (disponible, reservado, consumido),
        )


class FlujoCompletoTests(BaseMotorTestCase):
    def test_registrar_reserva_y_deja_pendiente(self):
        mid = self.programar()
        r = self.registrar(mid)
        self.assertTrue(r.ok)
        self.assertEqual(r.valor, mid)
        self.assertEqual(self.estado(mid), E.PENDIENTE)
        self.assertStock(self.p1, 3, 2)

        m = Mantenimiento.objects.get(pk=mid)
        self.assertEqual(m.km_previo, 1000)
        self.assertEqual(m.km_medido, 1500)
        self.assertEqual([(i.id, i.cantidad) for i in m.items_solicitados()], [("P1", 2)])
        self.assertEqual(Vehiculo.objects.get(placa="ABC-123").km_actual, 1500)

    def test_denegar_libera_reserva(self):
        mid = self.programar()
        self.registrar(mid)
        r = self.decidir(mid, Denegar("Repuesto no corresponde"))
        self.assertTrue(r.ok)
        self.assertEqual(self.estado(mid), E.DENEGADO)
        self.assertEqual(r.valor.cambios_solicitados, "Repuesto no corresponde")
        self.assertStock(self.p1, 5, 0)

    def test_aprobar_y_completar_consume_lo_ajustado(self):
        mid = self.programar()
        self.registrar(mid)
        r = self.decidir(mid, Aprobar((ItemRepuesto("P1", 2, precio=Decimal("10")),)))
        self.assertTrue(r.ok)
        self.assertEqual(self.estado(mid), E.APROBADO)
        self.assertStock(self.p1, 3, 2)

        with self.captureOnCommitCallbacks(execute=True):
            r = self.motor.completar(mid, "Cambio de filtro sin observaciones")
        self.assertTrue(r.ok)
        m = Mantenimiento.objects.get(pk=mid)
        self.assertEqual(m.estado, E.COMPLETADO)
        self.assertIsNotNone(m.fecha_fin)
        self.assertEqual(m.costo_total, Decimal("20"))
        self.assertStock(self.p1, 3, 0, 2)

    def test_revision_y_nuevo_registro(self):
        mid = self.programar()
        self.registrar(mid)
        r = self.decidir(mid, SolicitarRevision("Falta registrar P2"))
        self.assertTrue(r.ok)
        self.assertEqual(self.estado(mid), E.REVISION)
        self.assertStock(self.p1, 5, 0)

        r = self.registrar(mid, [{"id": "P1", "cantidad": 2}, {"id": "P2", "cantidad": 1}], km=1600)
        self.assertTrue(r.ok)
        self.assertEqual(self.estado(mid), E.PENDIENTE)
        self.assertStock(self.p1, 3, 2)
        self.assertStock(self.p2, 3, 1)
        self.assertEqual(Mantenimiento.objects.get(pk=mid).repuestos.count(), 2)

    def test_nuevo_registro_conserva_km_previo(self):
        mid = self.programar()
        self.registrar(mid, km=1500)
        self.decidir(mid, SolicitarRevision("Revisar repuestos"))
        self.registrar(mid, km=1600)
        m = Mantenimiento.objects.get(pk=mid)
        self.assertEqual((m.km_previo, m.km_medido), (1000, 1600))
        self.assertEqual(m.km_recorrido, 600)
        self.assertEqual(Vehiculo.objects.get(placa="ABC-123").km_actual, 1600)

    def test_revision_corrige_km_digitado_de_mas(self):
        mid = self.programar()
        self.registrar(mid, km=15000)
        self.decidir(mid, SolicitarRevision("El kilometraje está mal digitado"))
        r = self.registrar(mid, km=1500)
        self.assertTrue(r.ok, r)
        m = Mantenimiento.objects.get(pk=mid)
        self.assertEqual((m.km_previo, m.km_medido, m.km_recorrido), (1000, 1500, 500))
        self.assertEqual(Vehiculo.objects.get(placa="ABC-123").km_actual, 1500)

    def test_registro_directo_sin_programar(self):
        with self.captureOnCommitCallbacks(execute=True):
            r = self.motor.registrar_ejecutado(
                [{"id": "P2", "cantidad": 1}], 1200, placa="abc-123", tipo=TipoMantenimiento.CORRECTIVO,
            )
        self.assertTrue(r.ok)
        m = Mantenimiento.objects.get(pk=r.valor)
        self.assertEqual(m.estado, E.PENDIENTE)
        self.assertEqual(m.placa, "ABC-123")
        self.assertEqual(list(m.historial.values_list("estado", flat=True)), [E.PENDIENTE])
        self.assertStock(self.p2, 3, 1)

    def test_historial_cierra_tramos(self):
        mid = self.programar()
        self.registrar(mid)
        self.decidir(mid, Denegar())
        historial = list(HistorialEstado.objects.filter(mantenimiento_id=mid))
        self.assertEqual([h.estado for h in historial], [E.PROGRAMADO, E.PENDIENTE, E.DENEGADO])
        self.assertTrue(all(h.fin is not None for h in historial[:-1]))
        self.assertIsNone(historial[-1].fin)


class ConciliacionAprobacionTests(BaseMotorTestCase):
    def setUp(self):
        super().setUp()
        self.mid = self.programar()
        self.registrar(self.mid)

    def test_ajuste_mayor_reserva_la_diferencia(self):
        r = self.decidir(self.mid, Aprobar((ItemRepuesto("P1", 3, precio=Decimal("10")),)))
        self.assertTrue(r.ok)
        self.assertStock(self.p1, 2, 3)

    def test_ajuste_menor_libera_el_sobrante(self):
        self.decidir(self.mid, Aprobar((ItemRepuesto("P1", 1, precio=Decimal("10")),)))
        self.assertStock(self.p1, 4, 1)
        with self.captureOnCommitCallbacks(execute=True):
            self.motor.completar(self.mid, "Solo se usó un filtro")
        self.assertStock(self.p1, 4, 0, 1)

    def test_ajuste_con_stock_insuficiente_aborta_la_decision(self):
        r = self.decidir(self.mid, Aprobar((ItemRepuesto("P1", 9, precio=Decimal("10")),)))
        self.assertFalse(r.ok)
        self.assertEqual(r.tipo, "stock_insuficiente")
        self.assertEqual(self.estado(self.mid), E.PENDIENTE)
        self.assertStock(self.p1, 3, 2)
        self.assertFalse(Mantenimiento.objects.get(pk=self.mid).repuestos_ajuste.exists())

    def test_ajuste_sin_precio(self):
        r = self.decidir(self.mid, Aprobar((ItemRepuesto("P1", 2),)))
        self.assertEqual(r.tipo, "validacion")
        self.assertEqual(self.estado(self.mid), E.PENDIENTE)


class ValidacionTests(BaseMotorTestCase):
    def test_lista_vacia(self):
        mid = self.programar()
        r = self.registrar(mid, [])
        self.assertFalse(r.ok)
        self.assertEqual(r.tipo, "validacion")
        self.assertEqual(self.estado(mid), E.PROGRAMADO)

    def test_cantidad_cero_no_pasa_a_pendiente(self):
        mid = self.programar()
        r = self.registrar(mid, [{"id": "P1", "cantidad": 0}])
        self.assertEqual(r.tipo, "validacion")
        self.assertEqual(self.estado(mid), E.PROGRAMADO)

    def test_cantidad_decimal_no_se_trunca(self):
        mid = self.programar()
        r = self.registrar(mid, [{"id": "P1", "cantidad": 2.7}])
        self.assertEqual(r.tipo, "validacion")
        self.assertStock(self.p1, 5, 0)

    def test_repuestos_duplicados_no_mueven_inventario(self):
        mid = self.programar()
        r = self.registrar(mid, [{"id": "P1", "cantidad": 1}, {"id": "P1", "cantidad": 1}])
        self.assertEqual(r.tipo, "validacion")
        self.assertStock(self.p1, 5, 0)
        self.assertFalse(MovimientoStock.objects.exists())

    def test_stock_insuficiente_es_todo_o_nada(self):
        mid = self.programar()
        with self.captureOnCommitCallbacks() as callbacks:
            r = self.motor.registrar_ejecutado(
                [{"id": "P1", "cantidad": 2}, {"id": "P2", "cantidad": 10}], 1500, mantenimiento_id=mid,
            )
        self.assertEqual(r.tipo, "stock_insuficiente")
        self.assertEqual(callbacks, [])
        self.assertEqual(self.estado(mid), E.PROGRAMADO)
        self.assertStock(self.p1, 5, 0)
        self.assertStock(self.p2, 4, 0)
        self.assertEqual(Vehiculo.objects.get(placa="ABC-123").km_actual, 1000)

    def test_km_menor_al_anterior(self):
        mid = self.programar()
        r = self.registrar(mid, km=900)
        self.assertEqual(r.tipo, "validacion")
        self.assertStock(self.p1, 5, 0)

    def test_placa_desconocida(self):
        r = self.motor.programar("ZZZ-999", TipoMantenimiento.PREVENTIVO, self.manana)
        self.assertEqual(r.tipo, "no_encontrado")
        self.assertFalse(Mantenimiento.objects.exists())

    def test_tipo_desconocido(self):
        r = self.motor.programar("ABC-123", "predictivo", self.manana)
        self.assertEqual(r.tipo, "validacion")

    def test_mantenimiento_inexistente(self):
        self.assertEqual(self.motor.decidir(9999, Denegar()).tipo, "no_encontrado")
        self.assertEqual(self.motor.completar(9999, "x").tipo, "no_encontrado")

    def test_decision_desconocida(self):
        mid = self.programar()
        self.registrar(mid)
        self.assertEqual(self.motor.decidir(mid, "aprobar").tipo, "validacion")


class TransicionesTests(BaseMotorTestCase):
    def test_grafo(self):
        self.assertTrue(validar_transicion(E.PROGRAMADO, E.PENDIENTE))
        self.assertTrue(validar_transicion(E.REVISION, E.PENDIENTE))
        self.assertFalse(validar_transicion(E.PROGRAMADO, E.APROBADO))
        self.assertFalse(validar_transicion(E.PENDIENTE, E.COMPLETADO))
        for terminal in (E.DENEGADO, E.COMPLETADO, E.EXPIRADO):
            for destino in E.values:
                self.assertFalse(validar_transicion(terminal, destino))

    def test_completar_desde_pendiente_falla_sin_cambios(self):
        mid = self.programar()
        self.registrar(mid)
        r = self.motor.completar(mid, "Diagnóstico")
        self.assertEqual(r.tipo, "transicion_invalida")
        self.assertEqual(self.estado(mid), E.PENDIENTE)
        self.assertStock(self.p1, 3, 2)

    def test_decidir_sobre_programado_falla(self):
        mid = self.programar()
        r = self.motor.decidir(mid, Denegar())
        self.assertEqual(r.tipo, "transicion_invalida")
        self.assertEqual(self.estado(mid), E.PROGRAMADO)

    def test_no_se_decide_dos_veces(self):
        mid = self.programar()
        self.registrar(mid)
        self.decidir(mid, Denegar())
        r = self.motor.decidir(mid, Aprobar())
        self.assertEqual(r.tipo, "transicion_invalida")
        self.assertEqual(self.estado(mid), E.DENEGADO)
        self.assertStock(self.p1, 5, 0)

    def test_no_se_registra_un_aprobado(self):
        mid = self.programar()
        self.registrar(mid)
        self.decidir(mid, Aprobar((ItemRepuesto("P1", 2, precio=Decimal("10")),)))
        r = self.registrar(mid)
        self.assertEqual(r.tipo, "transicion_invalida")
        self.assertStock(self.p1, 3, 2)


class PublicacionTests(BaseMotorTestCase):
    def test_publica_solo_despues_del_commit(self):
        with self.captureOnCommitCallbacks() as callbacks:
            r = self.motor.programar("ABC-123", TipoMantenimiento.PREVENTIVO, self.manana)
            self.assertEqual(self.recibidos["admin"], [])
        self.assertTrue(r.ok)
        self.assertEqual(self.recibidos["admin"], [])
        for callback in callbacks:
            callback()
        self.assertEqual(len(self.recibidos["admin"]), 1)

    def test_proyecciones_y_notificacion(self):
        mid = self.programar()
        calendario = self.recibidos["calendarTecnico"][-1]["calendarTecnico"]
        self.assertEqual(calendario["calendar"], [{"dia": self.manana.strftime("%d/%m/%Y"), "cantidad": 1}])
        self.assertEqual([m["id"] for m in calendario["mantenimientos"]], [str(mid)])
        actividades = self.recibidos["Actividades"][-1]["Actividades"]
        self.assertEqual([m["id"] for m in actividades], [str(mid)])

        aviso = self.recibidos["admin"][-1]
        self.assertEqual(aviso["titulo"], "Mantenimiento programado")
        self.assertEqual(aviso["identificador"], str(mid))
        n = Notificacion.objects.get(identificador=str(mid))
        self.assertEqual(n.canal, "admin")
        self.assertEqual(n.tipo, "mantenimiento")
        self.assertFalse(n.leida)

    def test_decision_notifica_al_tecnico(self):
        mid = self.programar()
        self.registrar(mid)
        self.decidir(mid, SolicitarRevision("Revisar km"))
        self.assertEqual(self.recibidos["tecnico"][-1]["titulo"], "Mantenimiento en Revisión")

    def test_falla_de_publicacion_no_revierte(self):
        bus = mock.Mock(spec=BusEventos)
        bus.publicar.side_effect = RuntimeError("bus caído")
        motor = MotorMantenimientos(bus=bus)
        with self.assertLogs("mantenimientos.publicador", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                r = motor.programar("ABC-123", TipoMantenimiento.PREVENTIVO, self.manana)
        self.assertTrue(r.ok)
        self.assertEqual(self.estado(r.valor), E.PROGRAMADO)

    def test_falla_de_kilometraje_no_revierte(self):
        mid = self.programar()
        with mock.patch.object(RegistroVehiculosORM, "actualizar_km", side_effect=RuntimeError("registro caído")):
            with self.assertLogs("mantenimientos.services", level="ERROR"):
                r = self.registrar(mid)
        self.assertTrue(r.ok)
        self.assertEqual(self.estado(mid), E.PENDIENTE)
        self.assertStock(self.p1, 3, 2)
        self.assertEqual(Vehiculo.objects.get(placa="ABC-123").km_actual, 1000)

    def test_alerta_de_stock_bajo(self):
        Repuesto.objects.filter(codigo="P1").update(stock_minimo=3)
        mid = self.programar()
        self.registrar(mid)
        self.assertTrue(Notificacion.objects.filter(titulo="Stock bajo: P1", canal="admin").exists())

    def test_conflicto_de_base_de_datos(self):
        mid = self.programar()
        with mock.patch("mantenimientos.services.verificar_y_reservar",
                        side_effect=OperationalError("database is locked")):
            r = self.registrar(mid)
        self.assertEqual(r.tipo, "conflicto")
        self.assertEqual(self.estado(mid), E.PROGRAMADO)

    def test_stock_tomado_por_otra_transaccion(self):
        mid = self.programar()
        with mock.patch.object(inventario_services, "_bloquear", bloquear_y_drenar("P1")):
            r = self.registrar(mid)
        self.assertEqual(r.tipo, "conflicto")
        self.assertEqual(self.estado(mid), E.PROGRAMADO)
        self.assertStock(self.p1, 5, 0)
        self.assertFalse(Mantenimiento.objects.get(pk=mid).repuestos.exists())

    def test_dos_registros_compiten_por_el_mismo_repuesto(self):
        primero, segundo = self.programar(), self.programar()
        self.assertTrue(self.registrar(primero, [{"id": "P1", "cantidad": 3}]).ok)
        r = self.registrar(segundo, [{"id": "P1", "cantidad": 3}])
        self.assertEqual(r.tipo, "stock_insuficiente")
        self.assertEqual(self.estado(segundo), E.PROGRAMADO)
        self.assertStock(self.p1, 2, 3)


class ExpiracionTests(BaseMotorTestCase):
    def test_expirar_libera_reserva_pendiente(self):
        mid = self.programar()
        self.registrar(mid)
        with self.captureOnCommitCallbacks(execute=True):
            r = self.motor.expirar(mid)
        self.assertTrue(r.ok)
        self.assertEqual(self.estado(mid), E.EXPIRADO)
        self.assertStock(self.p1, 5, 0)

    def test_expirar_aprobado_libera_lo_ajustado(self):
        mid = self.programar()
        self.registrar(mid)
        self.decidir(mid, Aprobar((ItemRepuesto("P1", 1, precio=Decimal("10")),)))
        with self.captureOnCommitCallbacks(execute=True):
            self.motor.expirar(mid)
        self.assertStock(self.p1, 5, 0)

    def test_terminal_no_expira(self):
        mid = self.programar()
        self.registrar(mid)
        self.decidir(mid, Denegar())
        self.assertEqual(self.motor.expirar(mid).tipo, "transicion_invalida")

    def test_expirar_vencidos(self):
        antiguo = self.programar(timezone.localdate() - timedelta(days=10))
        reciente = self.programar(timezone.localdate() - timedelta(days=2))
        with self.captureOnCommitCallbacks(execute=True):
            resultados = self.motor.expirar_vencidos(dias=7)
        self.assertEqual([r.valor.pk for r in resultados], [antiguo])
        self.assertEqual(self.estado(antiguo), E.EXPIRADO)
        self.assertEqual(self.estado(reciente), E.PROGRAMADO)

    def test_comando(self):
        antiguo = self.programar(timezone.localdate() - timedelta(days=30))
        salida = StringIO()
        call_command("expirar_mantenimientos", "--dias", "7", stdout=salida)
        self.assertIn("1 mantenimientos expirados", salida.getvalue())
        self.assertEqual(self.estado(antiguo), E.EXPIRADO)

    def test_expirados_fuera_de_actividades(self):
        mid = self.programar()
        self.motor.expirar(mid)
        self.assertEqual(actividades_desde(timezone.localdate()), [])
        self.assertEqual(calendario_programados(), [])


class ConsultasTests(BaseMotorTestCase):
    def test_consultas(self):
        mid = self.programar()
        self.assertEqual(obtener_mantenimiento(mid).placa, "ABC-123")
        self.assertEqual([m.pk for m in mantenimientos_por_placa("abc-123")], [mid])
        self.assertEqual([m.pk for m in mantenimientos_por_estado(E.PROGRAMADO, self.manana)], [mid])
        self.assertEqual(mantenimientos_por_estado(E.PROGRAMADO, timezone.localdate()), [])

    def test_obtener_inexistente(self):
        with self.assertRaises(NoEncontradoError):
            obtener_mantenimiento(9999)
