from decimal import Decimal
from unittest import mock

from django.test import TestCase

from core.errores import (
    ConflictoError,
    InvarianteInventarioError,
    NoEncontradoError,
    StockInsuficienteError,
    ValidacionError,
)
from core.transacciones import UnidadDeTrabajo
from inventario import services
from inventario.items import ItemRepuesto, normalizar_items
from inventario.models import MovimientoStock, Repuesto
from inventario.services import (
    finalizar_consumo,
    ingresar_stock,
    liberar,
    repuestos_en_minimo,
    verificar_y_reservar,
)


class BaseInventarioTestCase(TestCase):
    def setUp(self):
        self.p1 = Repuesto.objects.create(codigo="P1", marca="Bosch", producto="Filtro de aceite", stock_disponible=5)
        self.p2 = Repuesto.objects.create(codigo="P2", marca="Mann", producto="Filtro de aire", stock_disponible=1)

    def assertStock(self, repuesto, disponible, reservado, consumido=0):
        repuesto.refresh_from_db()
        self.assertEqual(
            (repuesto.stock_disponible, repuesto.stock_reservado, repuesto.stock_consumido),
            (disponible, reservado, consumido),
        )


class ItemRepuestoTests(TestCase):
    def test_desde_dict(self):
        item = ItemRepuesto.desde_dict({"id": "P1", "cantidad": "2", "precio": "10.50", "producto": "Filtro"})
        self.assertEqual(item.cantidad, 2)
        self.assertEqual(item.precio, Decimal("10.50"))
        self.assertEqual(item.costo, Decimal("21.00"))

    def test_cantidad_negativa(self):
        with self.assertRaises(ValidacionError):
            ItemRepuesto("P1", -1)

    def test_sin_identificador(self):
        with self.assertRaises(ValidacionError):
            ItemRepuesto.desde_dict({"id": " ", "cantidad": 1})

    def test_lista_vacia(self):
        with self.assertRaises(ValidacionError):
            normalizar_items([])
        self.assertEqual(normalizar_items([], permitir_vacio=True), [])

    def test_cantidad_decimal_se_rechaza(self):
        for cantidad in (2.7, "2.5", "abc", float("inf")):
            with self.assertRaises(ValidacionError):
                normalizar_items([{"id": "P1", "cantidad": cantidad}])

    def test_cantidad_entera_en_texto_o_float(self):
        items = normalizar_items([{"id": "P1", "cantidad": "3"}, {"id": "P2", "cantidad": 2.0}])
        self.assertEqual([i.cantidad for i in items], [3, 2])

    def test_cantidad_cero_en_solicitud(self):
        with self.assertRaises(ValidacionError) as ctx:
            normalizar_items([{"id": "P1", "cantidad": 0}])
        self.assertEqual(ctx.exception.detalle["repuestos"], ["P1"])

    def test_duplicados(self):
        with self.assertRaises(ValidacionError) as ctx:
            normalizar_items([{"id": "P1", "cantidad": 1}, {"id": "P1", "cantidad": 2}])
        self.assertEqual(ctx.exception.detalle["repetidos"], ["P1"])


class ReservaTests(BaseInventarioTestCase):
    def test_reserva_mueve_disponible_a_reservado(self):
        with UnidadDeTrabajo() as uow:
            verificar_y_reservar(uow, [ItemRepuesto("P1", 2)])
        self.assertStock(self.p1, 3, 2)
        self.assertEqual(MovimientoStock.objects.filter(tipo=MovimientoStock.RESERVA).count(), 1)

    def test_todo_o_nada(self):
        with self.assertRaises(StockInsuficienteError) as ctx:
            with UnidadDeTrabajo() as uow:
                verificar_y_reservar(uow, [ItemRepuesto("P1", 2), ItemRepuesto("P2", 3)])
        self.assertEqual(ctx.exception.detalle["faltantes"][0]["id"], "P2")
        self.assertStock(self.p1, 5, 0)
        self.assertStock(self.p2, 1, 0)
        self.assertFalse(MovimientoStock.objects.exists())

    def test_repuesto_inexistente(self):
        with self.assertRaises(NoEncontradoError):
            with UnidadDeTrabajo() as uow:
                verificar_y_reservar(uow, [ItemRepuesto("NOPE", 1)])

    def test_requiere_unidad_de_trabajo(self):
        with self.assertRaises(RuntimeError):
            verificar_y_reservar(UnidadDeTrabajo(), [ItemRepuesto("P1", 1)])
        self.assertStock(self.p1, 5, 0)

    def test_cantidades_cero_se_ignoran(self):
        with UnidadDeTrabajo() as uow:
            self.assertEqual(verificar_y_reservar(uow, [ItemRepuesto("P1", 0)]), [])
        self.assertStock(self.p1, 5, 0)


def bloquear_y_drenar(codigo):
    """_bloquear que devuelve filas leídas antes de que otra transacción vacíe el stock de ``codigo``."""
    original = services._bloquear

    def bloquear(items):
        repuestos = original(items)
        Repuesto.objects.filter(codigo=codigo).update(stock_disponible=0)
        return repuestos

    return bloquear


class ConcurrenciaTests(BaseInventarioTestCase):
    def test_stock_drenado_entre_verificacion_y_update(self):
        with mock.patch.object(services, "_bloquear", bloquear_y_drenar("P2")):
            with self.assertRaises(ConflictoError) as ctx:
                with UnidadDeTrabajo() as uow:
                    verificar_y_reservar(uow, [ItemRepuesto("P1", 2), ItemRepuesto("P2", 1)])
        self.assertEqual(ctx.exception.detalle["repuesto"], "P2")
        # P1 alcanzó a reservarse dentro de la unidad y se deshace con ella
        self.assertStock(self.p1, 5, 0)
        self.assertStock(self.p2, 1, 0)
        self.assertFalse(MovimientoStock.objects.exists())

    def test_reservas_sucesivas_no_sobrevenden(self):
        with UnidadDeTrabajo() as uow:
            verificar_y_reservar(uow, [ItemRepuesto("P1", 3)])
        with self.assertRaises(StockInsuficienteError):
            with UnidadDeTrabajo() as uow:
                verificar_y_reservar(uow, [ItemRepuesto("P1", 3)])
        self.assertStock(self.p1, 2, 3)


class LiberarYConsumirTests(BaseInventarioTestCase):
    def setUp(self):
        super().setUp()
        with UnidadDeTrabajo() as uow:
            verificar_y_reservar(uow, [ItemRepuesto("P1", 2)])

    def test_liberar_restaura_disponible(self):
        with UnidadDeTrabajo() as uow:
            liberar(uow, [ItemRepuesto("P1", 2)], motivo="Denegado")
        self.assertStock(self.p1, 5, 0)

    def test_finalizar_consumo_no_toca_disponible(self):
        with UnidadDeTrabajo() as uow:
            finalizar_consumo(uow, [ItemRepuesto("P1", 2)])
        self.assertStock(self.p1, 3, 0, 2)

    def test_liberar_mas_de_lo_reservado_es_invariante_rota(self):
        with self.assertRaises(InvarianteInventarioError):
            with UnidadDeTrabajo() as uow:
                liberar(uow, [ItemRepuesto("P1", 3)])
        self.assertStock(self.p1, 3, 2)

    def test_consumir_mas_de_lo_reservado_es_invariante_rota(self):
        with self.assertRaises(InvarianteInventarioError):
            with UnidadDeTrabajo() as uow:
                finalizar_consumo(uow, [ItemRepuesto("P1", 5)])
        self.assertStock(self.p1, 3, 2)


class EntradaStockTests(BaseInventarioTestCase):
    def test_ingreso_aumenta_total(self):
        with UnidadDeTrabajo() as uow:
            repuesto = ingresar_stock(uow, "P2", 4)
        self.assertEqual(repuesto.stock_disponible, 5)
        self.assertEqual(repuesto.stock_total, 5)

    def test_ingreso_invalido(self):
        with self.assertRaises(ValidacionError):
            with UnidadDeTrabajo() as uow:
                ingresar_stock(uow, "P2", 0)

    def test_conservacion(self):
        """disponible + reservado + consumido es igual a la suma de entradas en todo momento."""
        Repuesto.objects.create(codigo="P3", producto="Bujía")
        with UnidadDeTrabajo() as uow:
            ingresar_stock(uow, "P3", 10)
        pasos = [
            (verificar_y_reservar, [ItemRepuesto("P3", 6)]),
            (liberar, [ItemRepuesto("P3", 2)]),
            (finalizar_consumo, [ItemRepuesto("P3", 3)]),
            (verificar_y_reservar, [ItemRepuesto("P3", 5)]),
        ]
        for operacion, items in pasos:
            with UnidadDeTrabajo() as uow:
                operacion(uow, items)
            p3 = Repuesto.objects.get(codigo="P3")
            self.assertEqual(p3.stock_total, 10)
            self.assertGreaterEqual(p3.stock_disponible, 0)
            self.assertGreaterEqual(p3.stock_reservado, 0)
        self.assertEqual((p3.stock_disponible, p3.stock_reservado, p3.stock_consumido), (1, 6, 3))

    def test_repuestos_en_minimo(self):
        Repuesto.objects.filter(codigo="P1").update(stock_minimo=5)
        self.assertEqual([r.codigo for r in repuestos_en_minimo(["P1", "P2"])], ["P1"])
