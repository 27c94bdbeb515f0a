import os
import tempfile
from datetime import date, datetime, timedelta
from decimal import Decimal
from io import BytesIO, StringIO

from django.core.management import CommandError, call_command
from django.test import TestCase
from django.utils import timezone
from openpyxl import load_workbook

from flota.models import Vehiculo
from mantenimientos.models import EstadoMantenimiento, Mantenimiento, RepuestoAjuste, TipoMantenimiento
from reportes import services
from reportes.exportar import libro_estadisticas, pdf_estadisticas


def _dt(*args):
    return timezone.make_aware(datetime(*args))


class BaseReportesTestCase(TestCase):
    def setUp(self):
        Vehiculo.objects.create(placa="ABC-123", km_actual=2000)
        self.mayo = self._completado(
            TipoMantenimiento.PREVENTIVO, _dt(2024, 5, 15, 8), km=(1000, 1500), horas=10,
            ajustes=[("P1", "Filtro de aceite", 2, "10"), ("P2", "Pastillas", 1, "50")],
        )
        self.mayo_correctivo = self._completado(
            TipoMantenimiento.CORRECTIVO, _dt(2024, 5, 20, 8), km=(1500, 1700), horas=4,
            ajustes=[("P3", "Bujía", 4, "5"), ("P4", "Correa", 1, "80"), ("P5", "Aceite", 2, "30")],
        )
        self.abril = self._completado(
            TipoMantenimiento.PREVENTIVO, _dt(2024, 4, 10, 8), km=(700, 1000), horas=2,
            ajustes=[("P1", "Filtro de aceite", 1, "10")],
        )
        Mantenimiento.objects.create(
            placa="ABC-123", tipo=TipoMantenimiento.CORRECTIVO, fecha=_dt(2024, 5, 22, 8),
            estado=EstadoMantenimiento.DENEGADO,
        )

    def _completado(self, tipo, fecha, km, horas, ajustes):
        m = Mantenimiento.objects.create(
            placa="ABC-123", tipo=tipo, fecha=fecha, estado=EstadoMantenimiento.COMPLETADO,
            fecha_inicio=fecha, fecha_fin=fecha + timedelta(hours=horas),
            km_previo=km[0], km_medido=km[1],
        )
        for codigo, producto, cantidad, precio in ajustes:
            RepuestoAjuste.objects.create(
                mantenimiento=m, codigo=codigo, producto=producto, cantidad=cantidad, precio=Decimal(precio),
            )
        return m


class EstadisticasTests(BaseReportesTestCase):
    def test_km_por_mes(self):
        filas = services.km_recorrido_por_mes("ABC-123", date(2024, 5, 31))
        self.assertEqual(len(filas), 12)
        self.assertEqual(filas[0]["mes"], "6/2023")
        self.assertEqual(filas[-1], {"mes": "5/2024", "km_recorrido": 700})
        self.assertEqual(filas[-2], {"mes": "4/2024", "km_recorrido": 300})

    def test_costos_del_mes(self):
        costos = services.costos_del_mes("ABC-123", date(2024, 5, 31))
        self.assertEqual(costos["costo_preventivos"], Decimal("70"))
        self.assertEqual(costos["costo_correctivos"], Decimal("160"))
        self.assertEqual(costos["costo_total"], Decimal("230"))
        self.assertEqual(costos["costo_mes_pasado"], Decimal("10"))

    def test_costos_por_mes(self):
        filas = services.costos_por_mes("ABC-123", date(2024, 5, 1))
        self.assertEqual(filas[-1]["total"], Decimal("230"))
        self.assertEqual(filas[-2]["preventivo"], Decimal("10"))
        self.assertEqual(filas[0]["total"], Decimal("0"))

    def test_repuestos_mas_consumidos(self):
        top = services.repuestos_mas_consumidos("ABC-123", date(2024, 5, 31))
        self.assertEqual(
            [r["producto"] for r in top["repuestos"]],
            ["Correa", "Aceite", "Pastillas", "Bujía"],
        )
        self.assertEqual(top["otros"], Decimal("20"))

    def test_repuestos_rellena_posiciones_vacias(self):
        top = services.repuestos_mas_consumidos(None, date(2024, 4, 30))
        self.assertEqual(top["repuestos"][0], {"producto": "Filtro de aceite", "costo": Decimal("10")})
        self.assertEqual([r["producto"] for r in top["repuestos"][1:]], ["-", "-", "-"])
        self.assertEqual(top["otros"], Decimal("0"))

    def test_conteo_del_mes(self):
        self.assertEqual(services.conteo_del_mes(None, date(2024, 5, 1)), {"completados": 2, "denegados": 1})

    def test_conteo_del_mes_por_placa(self):
        self.assertEqual(services.conteo_del_mes("abc-123", date(2024, 5, 1)), {"completados": 2, "denegados": 1})
        self.assertEqual(services.conteo_del_mes("ZZZ-999", date(2024, 5, 1)), {"completados": 0, "denegados": 0})

    def test_repuestos_mas_consumidos_por_placa(self):
        self.assertEqual(services.repuestos_mas_consumidos("ZZZ-999", date(2024, 5, 31))["otros"], Decimal("0"))
        flota = services.repuestos_mas_consumidos(None, date(2024, 5, 31))
        self.assertEqual(flota, services.repuestos_mas_consumidos("ABC-123", date(2024, 5, 31)))

    def test_operatividad_por_mes(self):
        filas = services.operatividad_por_mes("ABC-123", date(2024, 5, 31))
        self.assertEqual(filas[-1], {"mes": "5/2024", "operatividad": 31 * 24 - 14.0})
        self.assertEqual(filas[-2]["operatividad"], 30 * 24 - 2.0)

    def test_operatividad_porcentual(self):
        ahora = self.abril.fecha_inicio + timedelta(hours=160)
        self.assertAlmostEqual(services.operatividad_porcentual("ABC-123", ahora), (160 - 16) / 160)
        self.assertAlmostEqual(services.operatividad_horas("ABC-123", ahora), 144.0)

    def test_sin_completados(self):
        self.assertEqual(services.operatividad_porcentual("ZZZ-999"), 0.0)


class ConsumoYCalendarioTests(BaseReportesTestCase):
    def _en_estado(self, estado, fecha):
        return Mantenimiento.objects.create(
            placa="ABC-123", tipo=TipoMantenimiento.PREVENTIVO, fecha=fecha, estado=estado,
        )

    def test_consumo_por_mes(self):
        filas = services.repuestos_consumidos_por_mes("ABC-123", date(2024, 5, 31), meses=2, top=3)
        self.assertEqual([f["mes"] for f in filas], ["4/2024", "5/2024"])
        self.assertEqual(filas[0]["repuestos"], [{"producto": "Filtro de aceite", "cantidad": 1}])
        self.assertEqual(filas[0]["otros"], 0)
        self.assertEqual(
            filas[1]["repuestos"],
            [
                {"producto": "Bujía", "cantidad": 4},
                {"producto": "Aceite", "cantidad": 2},
                {"producto": "Filtro de aceite", "cantidad": 2},
            ],
        )
        self.assertEqual(filas[1]["otros"], 2)

    def test_consumo_meses_sin_datos(self):
        filas = services.repuestos_consumidos_por_mes(None, date(2024, 5, 31))
        self.assertEqual(len(filas), 12)
        self.assertEqual(filas[0], {"mes": "6/2023", "repuestos": [], "otros": 0})
        self.assertEqual(len(filas[-1]["repuestos"]), 5)

    def test_calendario_rango(self):
        self._en_estado(EstadoMantenimiento.PROGRAMADO, _dt(2024, 5, 16, 9))
        self._en_estado(EstadoMantenimiento.PROGRAMADO, _dt(2024, 5, 16, 15))
        self._en_estado(EstadoMantenimiento.PENDIENTE, _dt(2024, 5, 16, 10))
        self._en_estado(EstadoMantenimiento.PROGRAMADO, _dt(2024, 11, 15, 10))
        self._en_estado(EstadoMantenimiento.PROGRAMADO, _dt(2024, 11, 16, 10))
        self._en_estado(EstadoMantenimiento.PROGRAMADO, _dt(2023, 11, 14, 10))
        self.assertEqual(
            services.calendario_rango(date(2024, 5, 15)),
            [{"fecha": date(2024, 5, 16), "cantidad": 2}, {"fecha": date(2024, 11, 15), "cantidad": 1}],
        )

    def test_resumen_calendario_hoy(self):
        self._en_estado(EstadoMantenimiento.PROGRAMADO, _dt(2024, 5, 22, 9))
        self._en_estado(EstadoMantenimiento.PENDIENTE, _dt(2024, 5, 22, 10))
        self._en_estado(EstadoMantenimiento.EXPIRADO, _dt(2024, 5, 22, 11))
        self._en_estado(EstadoMantenimiento.COMPLETADO, _dt(2024, 5, 22, 12))
        self._en_estado(EstadoMantenimiento.PROGRAMADO, _dt(2024, 5, 23, 9))
        self.assertEqual(services.resumen_calendario_hoy(date(2024, 5, 22)), {"programados": 1, "total": 3})

    def test_resumen_calendario_sin_mantenimientos(self):
        self.assertEqual(services.resumen_calendario_hoy(date(2030, 1, 1)), {"programados": 0, "total": 0})


class BusquedaCompletadosTests(BaseReportesTestCase):
    def test_todos_los_completados(self):
        resultado = services.buscar_completados()
        self.assertEqual(resultado["total_paginas"], 1)
        self.assertEqual(
            [m["id"] for m in resultado["mantenimientos"]],
            [self.mayo_correctivo.pk, self.mayo.pk, self.abril.pk],
        )
        primero = resultado["mantenimientos"][0]
        self.assertEqual(primero["repuestos_usados"], 3)
        self.assertEqual(primero["costo_repuestos"], Decimal("160"))
        self.assertEqual(primero["placa"], "ABC-123")

    def test_filtra_por_fecha_de_fin(self):
        resultado = services.buscar_completados(date(2024, 5, 1), date(2024, 5, 15))
        self.assertEqual([m["id"] for m in resultado["mantenimientos"]], [self.mayo.pk])
        self.assertEqual(resultado["mantenimientos"][0]["costo_repuestos"], Decimal("70"))

    def test_filtra_por_placa(self):
        self.assertEqual(len(services.buscar_completados(placa="abc")["mantenimientos"]), 3)
        self.assertEqual(services.buscar_completados(placa="ZZZ")["mantenimientos"], [])

    def test_pagina_de_seis(self):
        for dia in range(1, 6):
            self._completado(TipoMantenimiento.PREVENTIVO, _dt(2024, 6, dia, 8), km=(1700, 1700), horas=1, ajustes=[])
        primera = services.buscar_completados()
        self.assertEqual(primera["total_paginas"], 2)
        self.assertEqual(len(primera["mantenimientos"]), 6)
        segunda = services.buscar_completados(pagina=2)
        self.assertEqual(segunda["pagina"], 2)
        self.assertEqual([m["id"] for m in segunda["mantenimientos"]], [self.mayo.pk, self.abril.pk])
        self.assertEqual(services.buscar_completados(pagina=99)["pagina"], 2)
        self.assertEqual(services.buscar_completados(pagina="x")["pagina"], 1)


class ExportacionTests(BaseReportesTestCase):
    def test_libro(self):
        wb = libro_estadisticas("abc-123", date(2024, 5, 31))
        self.assertEqual(wb.sheetnames, ["Resumen", "Km recorrido", "Costos", "Top Repuestos", "Operatividad"])
        self.assertEqual(wb["Resumen"]["B5"].value, Decimal("230"))
        self.assertEqual(wb["Km recorrido"].max_row, 13)
        self.assertEqual(wb["Top Repuestos"]["A6"].value, "otros")

    def test_comando(self):
        with tempfile.TemporaryDirectory() as tmp:
            ruta = os.path.join(tmp, "estadisticas.xlsx")
            salida = StringIO()
            call_command("exportar_estadisticas", "ABC-123", "--fecha", "2024-05-31", "--salida", ruta, stdout=salida)
            self.assertIn(ruta, salida.getvalue())
            self.assertEqual(load_workbook(ruta)["Costos"]["A13"].value, "5/2024")

    def test_pdf(self):
        destino = BytesIO()
        pdf_estadisticas("ABC-123", date(2024, 5, 31), destino)
        self.assertTrue(destino.getvalue().startswith(b"%PDF"))

    def test_comando_pdf(self):
        with tempfile.TemporaryDirectory() as tmp:
            ruta = os.path.join(tmp, "estadisticas.pdf")
            call_command("exportar_estadisticas", "ABC-123", "--formato", "pdf", "--salida", ruta, stdout=StringIO())
            self.assertTrue(os.path.getsize(ruta) > 0)

    def test_comando_placa_inexistente(self):
        with self.assertRaises(CommandError):
            call_command("exportar_estadisticas", "ZZZ-999", stdout=StringIO())
