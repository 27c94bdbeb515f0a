from django.test import TestCase

from core.errores import NoEncontradoError
from flota.models import Vehiculo
from flota.registro import RegistroVehiculosORM, normalizar_placa


class RegistroVehiculosTests(TestCase):
    def setUp(self):
        self.registro = RegistroVehiculosORM()
        Vehiculo.objects.create(placa="abc-123", cliente="Transportes Lima", km_registro_inicial=1000, km_actual=1000)

    def test_placa_se_guarda_en_mayusculas(self):
        self.assertTrue(Vehiculo.objects.filter(placa="ABC-123").exists())
        self.assertEqual(normalizar_placa("  abc-123 "), "ABC-123")

    def test_existe(self):
        self.assertTrue(self.registro.existe("abc-123"))
        self.assertFalse(self.registro.existe("ZZZ-999"))

    def test_buscar_por_placa(self):
        ficha = self.registro.buscar_por_placa("ABC-123")
        self.assertEqual(ficha["cliente"], "Transportes Lima")
        self.assertEqual(ficha["km_actual"], 1000)

    def test_buscar_inexistente(self):
        with self.assertRaises(NoEncontradoError):
            self.registro.buscar_por_placa("ZZZ-999")

    def test_actualizar_km(self):
        self.registro.actualizar_km("abc-123", 1500)
        self.assertEqual(Vehiculo.objects.get(placa="ABC-123").km_actual, 1500)

    def test_actualizar_km_inexistente(self):
        with self.assertRaises(NoEncontradoError):
            self.registro.actualizar_km("ZZZ-999", 10)
