import json
from unittest import mock

from django.core.exceptions import ImproperlyConfigured
from django.test import TestCase, override_settings

from core.bus import BusRedis, BusSenales, construir_bus
from core.errores import NoEncontradoError
from core.models import Notificacion
from core.roles import Canal
from core.services import AlmacenNotificaciones, marcar_leida, no_leidas, notificar
from core.transacciones import UnidadDeTrabajo


class BusSenalesTests(TestCase):
    def setUp(self):
        self.bus = BusSenales()

    def test_entrega_solo_al_topico_suscrito(self):
        recibidos = []
        self.bus.suscribir("Actividades", recibidos.append)
        self.bus.publicar("Actividades", {"n": 1})
        self.bus.publicar("calendarTecnico", {"n": 2})
        self.assertEqual(recibidos, [{"n": 1}])

    def test_cancelar_suscripcion(self):
        recibidos = []
        cancelar = self.bus.suscribir("admin", recibidos.append)
        cancelar()
        self.bus.publicar("admin", {"n": 1})
        self.assertEqual(recibidos, [])

    def test_suscriptor_posterior_no_recibe_historial(self):
        self.bus.publicar("admin", {"n": 1})
        recibidos = []
        self.bus.suscribir("admin", recibidos.append)
        self.assertEqual(recibidos, [])

    def test_suscriptor_que_falla_no_afecta_a_los_demas(self):
        recibidos = []

        def roto(payload):
            raise RuntimeError("boom")

        self.bus.suscribir("admin", roto)
        self.bus.suscribir("admin", recibidos.append)
        with self.assertLogs("core.bus", level="ERROR"):
            self.bus.publicar("admin", {"n": 1})
        self.assertEqual(recibidos, [{"n": 1}])


class BusRedisTests(TestCase):
    def test_publica_json(self):
        cliente = mock.Mock()
        bus = BusRedis(cliente=cliente)
        bus.publicar("Actividades", {"id": "1"})
        cliente.publish.assert_called_once_with("Actividades", json.dumps({"id": "1"}))


class ConstruirBusTests(TestCase):
    def test_memoria_por_defecto(self):
        self.assertIsInstance(construir_bus("memory"), BusSenales)

    @override_settings(EVENT_BACKEND="kafka")
    def test_backend_desconocido(self):
        with self.assertRaises(ImproperlyConfigured):
            construir_bus()


class NotificacionTests(TestCase):
    def test_no_leidas_por_canal(self):
        notificar(Canal.ADMIN, "mantenimiento", "1", "Mantenimiento programado")
        notificar(Canal.TECNICO, "mantenimiento", "1", "Mantenimiento Aprobado")
        notificar(Canal.ADMIN, "mantenimiento", "2", "Leída", leida=True)
        titulos = [n.titulo for n in no_leidas(Canal.ADMIN)]
        self.assertEqual(titulos, ["Mantenimiento programado"])

    def test_marcar_leida(self):
        n = AlmacenNotificaciones().registrar(Canal.ADMIN, "mantenimiento", "7", "Titulo", "Cuerpo")
        marcar_leida(n.pk)
        self.assertTrue(Notificacion.objects.get(pk=n.pk).leida)
        self.assertEqual(no_leidas(Canal.ADMIN), [])

    def test_marcar_leida_inexistente(self):
        with self.assertRaises(NoEncontradoError):
            marcar_leida(9999)

    def test_payload(self):
        n = notificar(Canal.ADMIN, "mantenimiento", "3", "T", "D")
        payload = n.como_payload()
        self.assertEqual(payload["canal"], "admin")
        self.assertEqual(payload["identificador"], "3")
        self.assertFalse(payload["leida"])


class UnidadDeTrabajoTests(TestCase):
    def test_exige_unidad_abierta(self):
        uow = UnidadDeTrabajo()
        self.assertFalse(uow.activa)
        with self.assertRaises(RuntimeError):
            uow.exigir_activa()

    def test_al_confirmar_corre_tras_commit(self):
        llamadas = []
        with self.captureOnCommitCallbacks(execute=True):
            with UnidadDeTrabajo() as uow:
                self.assertTrue(uow.activa)
                uow.al_confirmar(lambda: llamadas.append("ok"))
                self.assertEqual(llamadas, [])
        self.assertEqual(llamadas, ["ok"])

    def test_rollback_descarta_escrituras_y_efectos(self):
        llamadas = []
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(ValueError):
                with UnidadDeTrabajo() as uow:
                    notificar(Canal.ADMIN, "mantenimiento", "1", "No debe quedar")
                    uow.al_confirmar(lambda: llamadas.append("no"))
                    raise ValueError("falla")
        self.assertEqual(callbacks, [])
        self.assertEqual(llamadas, [])
        self.assertFalse(Notificacion.objects.exists())
