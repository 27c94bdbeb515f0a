# reportes/exportar.py
from django.utils import timezone
from openpyxl import Workbook
from openpyxl.formatting.rule import DataBarRule
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from flota.registro import normalizar_placa
from . import services


def _anchos(ws, anchos):
    for i, w in enumerate(anchos, start=1):
        ws.column_dimensions[get_column_letter(i)].width = w


def _barra(ws, columna, color):
    if ws.max_row > 1:
        ws.conditional_formatting.add(
            f"{columna}2:{columna}{ws.max_row}",
            DataBarRule(start_type="num", start_value=0, end_type="max", color=color)
        )


def libro_estadisticas(placa: str, fecha) -> Workbook:
    """Libro con las estadísticas de un vehículo para el mes de ``fecha`` y los 11 anteriores."""
    placa = normalizar_placa(placa)
    wb = Workbook()

    # Hoja 1: Resumen
    ws = wb.active
    ws.title = "Resumen"
    _anchos(ws, [32, 18])
    ws.append([f"Estadísticas de mantenimiento - {placa}"])
    ws["A1"].font = Font(bold=True, size=13)
    ws.append([f"Generado: {timezone.localtime(timezone.now()).strftime('%d-%m-%Y %H:%M')}"])
    ws.append([])

    costos = services.costos_del_mes(placa, fecha)
    conteo = services.conteo_del_mes(placa, fecha)
    ws.append(["Mes", costos["mes"]])
    ws.append(["Costo total", costos["costo_total"]])
    ws.append(["Costo preventivos", costos["costo_preventivos"]])
    ws.append(["Costo correctivos", costos["costo_correctivos"]])
    ws.append(["Costo mes pasado", costos["costo_mes_pasado"]])
    ws.append(["Mantenimientos completados", conteo["completados"]])
    ws.append(["Mantenimientos denegados", conteo["denegados"]])
    ws.append(["Operatividad (%)", services.operatividad_porcentual(placa)])
    for fila in range(5, 9):
        ws[f"B{fila}"].number_format = "#,##0.00"
    ws["B11"].number_format = "0.00%"

    # Hoja 2: Km por mes
    ws2 = wb.create_sheet("Km recorrido")
    ws2.append(["Mes", "Km"])
    for r in services.km_recorrido_por_mes(placa, fecha):
        ws2.append([r["mes"], r["km_recorrido"]])
    _anchos(ws2, [12, 14])
    for cell in ws2["B"][1:]:
        cell.number_format = "#,##0"
    _barra(ws2, "B", "638EC6")

    # Hoja 3: Costos por tipo
    ws3 = wb.create_sheet("Costos")
    ws3.append(["Mes", "Preventivo", "Correctivo", "Total"])
    for r in services.costos_por_mes(placa, fecha):
        ws3.append([r["mes"], r["preventivo"], r["correctivo"], r["total"]])
    _anchos(ws3, [12, 16, 16, 16])
    for row in ws3.iter_rows(min_row=2, min_col=2, max_col=4):
        for cell in row:
            cell.number_format = "#,##0.00"
    _barra(ws3, "D", "95C76F")

    # Hoja 4: Top Repuestos
    ws4 = wb.create_sheet("Top Repuestos")
    ws4.append(["Producto", "Costo"])
    top = services.repuestos_mas_consumidos(placa, fecha)
    for r in top["repuestos"]:
        ws4.append([r["producto"], r["costo"]])
    ws4.append(["otros", top["otros"]])
    _anchos(ws4, [35, 14])
    for cell in ws4["B"][1:]:
        cell.number_format = "#,##0.00"
    _barra(ws4, "B", "638EC6")

    # Hoja 5: Operatividad
    ws5 = wb.create_sheet("Operatividad")
    ws5.append(["Mes", "Horas operativas"])
    for r in services.operatividad_por_mes(placa, fecha):
        ws5.append([r["mes"], r["operatividad"]])
    _anchos(ws5, [12, 18])
    for cell in ws5["B"][1:]:
        cell.number_format = "0.00"

    return wb


def exportar_estadisticas(placa: str, fecha, ruta) -> str:
    libro_estadisticas(placa, fecha).save(ruta)
    return str(ruta)


def pdf_estadisticas(placa: str, fecha, destino):
    """Resumen de una página en PDF. ``destino`` es una ruta o un archivo binario abierto."""
    from reportlab.lib.pagesizes import A4
    from reportlab.lib.units import cm
    from reportlab.pdfgen import canvas

    placa = normalizar_placa(placa)
    costos = services.costos_del_mes(placa, fecha)
    conteo = services.conteo_del_mes(placa, fecha)
    top = services.repuestos_mas_consumidos(placa, fecha)

    c = canvas.Canvas(destino, pagesize=A4)
    w, h = A4
    left = 2 * cm
    y = h - 2 * cm

    c.setFont("Helvetica-Bold", 12)
    c.drawString(left, y, f"Estadísticas de mantenimiento · {placa} · {costos['mes']}")
    y -= 0.6 * cm
    c.setFont("Helvetica", 10)
    c.drawString(left, y, f"Generado: {timezone.localtime(timezone.now()).strftime('%d-%m-%Y %H:%M')}")
    y -= 1.0 * cm

    c.setFont("Helvetica-Bold", 10)
    c.drawString(left, y, "Costos:")
    c.setFont("Helvetica", 10)
    y -= 0.5 * cm
    c.drawString(
        left, y,
        f"Total: {costos['costo_total']:.2f}   Preventivos: {costos['costo_preventivos']:.2f}   "
        f"Correctivos: {costos['costo_correctivos']:.2f}   Mes pasado: {costos['costo_mes_pasado']:.2f}",
    )
    y -= 0.5 * cm
    c.drawString(
        left, y,
        f"Completados: {conteo['completados']}   Denegados: {conteo['denegados']}   "
        f"Operatividad: {services.operatividad_porcentual(placa) * 100:.2f}%",
    )
    y -= 0.8 * cm

    c.setFont("Helvetica-Bold", 10)
    c.drawString(left, y, "Repuestos con mayor costo")
    y -= 0.6 * cm
    c.setFont("Helvetica-Bold", 9)
    c.drawString(left, y, "Producto")
    c.drawRightString(15 * cm, y, "Costo")
    y -= 0.45 * cm
    c.setFont("Helvetica", 9)
    for r in top["repuestos"] + [{"producto": "otros", "costo": top["otros"]}]:
        c.drawString(left, y, str(r["producto"])[:60])
        c.drawRightString(15 * cm, y, f"{r['costo']:.2f}")
        y -= 0.42 * cm
    y -= 0.4 * cm

    c.setFont("Helvetica-Bold", 10)
    c.drawString(left, y, "Km recorrido y horas operativas (últimos 12 meses)")
    y -= 0.6 * cm
    c.setFont("Helvetica-Bold", 9)
    c.drawString(left, y, "Mes")
    c.drawRightString(9 * cm, y, "Km")
    c.drawRightString(15 * cm, y, "Horas operativas")
    y -= 0.45 * cm
    c.setFont("Helvetica", 9)
    operatividad = {r["mes"]: r["operatividad"] for r in services.operatividad_por_mes(placa, fecha)}
    for r in services.km_recorrido_por_mes(placa, fecha):
        c.drawString(left, y, r["mes"])
        c.drawRightString(9 * cm, y, f"{r['km_recorrido']:,}")
        c.drawRightString(15 * cm, y, f"{operatividad.get(r['mes'], 0):.2f}")
        y -= 0.42 * cm
        if y < 2 * cm:
            c.showPage()
            y = h - 2 * cm
            c.setFont("Helvetica", 9)

    c.showPage()
    c.save()
    return destino
