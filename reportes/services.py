# reportes/services.py
"""
Estadísticas de solo lectura sobre mantenimientos Completados.

Ninguna función escribe. Las estadísticas recorren los mantenimientos ya
cerrados y agregan en Python, agrupando por el mes local de la fecha
programada; el calendario cuenta los programados por día.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, time, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from django.core.paginator import Paginator
from django.utils import timezone

from flota.registro import normalizar_placa
from mantenimientos.models import EstadoMantenimiento, Mantenimiento, TipoMantenimiento

logger = logging.getLogger(__name__)

MESES_VENTANA = 12
TOP_REPUESTOS = 4
TOP_CONSUMIDOS = 5
MESES_CALENDARIO = 6
POR_PAGINA = 6
CERO = Decimal("0")


def _como_dia(fecha):
    if isinstance(fecha, datetime):
        return timezone.localdate(fecha) if timezone.is_aware(fecha) else fecha.date()
    return fecha


def _rango_mes(dia):
    """[primer día del mes, primer día del mes siguiente) como datetimes aware."""
    inicio = timezone.make_aware(datetime.combine(dia.replace(day=1), time.min))
    return inicio, inicio + relativedelta(months=1)


def _etiqueta(dia) -> str:
    return f"{dia.month}/{dia.year}"


def _meses_ventana(fecha, cuantos: int = MESES_VENTANA) -> list:
    """Los ``cuantos`` meses que terminan en el mes de ``fecha``, del más antiguo al actual."""
    ultimo = _como_dia(fecha).replace(day=1)
    return [ultimo - relativedelta(months=n) for n in range(cuantos - 1, -1, -1)]


def _completados(placa=None, desde=None, hasta=None):
    qs = Mantenimiento.objects.filter(estado=EstadoMantenimiento.COMPLETADO)
    if placa:
        qs = qs.filter(placa=normalizar_placa(placa))
    if desde is not None:
        qs = qs.filter(fecha__gte=desde)
    if hasta is not None:
        qs = qs.filter(fecha__lt=hasta)
    return qs.prefetch_related("repuestos_ajuste")


def _por_mes(mantenimientos) -> dict:
    grupos = defaultdict(list)
    for m in mantenimientos:
        grupos[timezone.localdate(m.fecha).replace(day=1)].append(m)
    return grupos


def km_recorrido_por_mes(placa: str, fecha) -> list[dict]:
    meses = _meses_ventana(fecha)
    desde, _ = _rango_mes(meses[0])
    _, hasta = _rango_mes(meses[-1])
    grupos = _por_mes(_completados(placa, desde, hasta))
    return [
        {"mes": _etiqueta(mes), "km_recorrido": sum(m.km_recorrido for m in grupos.get(mes, []))}
        for mes in meses
    ]


def _costo(mantenimientos) -> Decimal:
    return sum((m.costo_total for m in mantenimientos), CERO)


def costos_del_mes(placa: str, fecha) -> dict:
    """Costo del mes de ``fecha`` separado por tipo, más el total del mes anterior."""
    dia = _como_dia(fecha)
    desde, hasta = _rango_mes(dia)
    anterior, _ = _rango_mes(dia - relativedelta(months=1))
    del_mes = list(_completados(placa, desde, hasta))
    return {
        "mes": _etiqueta(dia),
        "costo_total": _costo(del_mes),
        "costo_preventivos": _costo(m for m in del_mes if m.tipo == TipoMantenimiento.PREVENTIVO),
        "costo_correctivos": _costo(m for m in del_mes if m.tipo == TipoMantenimiento.CORRECTIVO),
        "costo_mes_pasado": _costo(_completados(placa, anterior, desde)),
    }


def costos_por_mes(placa: str, fecha) -> list[dict]:
    meses = _meses_ventana(fecha)
    desde, _ = _rango_mes(meses[0])
    _, hasta = _rango_mes(meses[-1])
    grupos = _por_mes(_completados(placa, desde, hasta))
    filas = []
    for mes in meses:
        del_mes = grupos.get(mes, [])
        filas.append({
            "mes": _etiqueta(mes),
            "preventivo": _costo(m for m in del_mes if m.tipo == TipoMantenimiento.PREVENTIVO),
            "correctivo": _costo(m for m in del_mes if m.tipo == TipoMantenimiento.CORRECTIVO),
            "total": _costo(del_mes),
        })
    return filas


def repuestos_mas_consumidos(placa: str | None, fecha, top: int = TOP_REPUESTOS) -> dict:
    """
    Repuestos con mayor costo consumido en el mes de ``fecha``.

    Devuelve exactamente ``top`` posiciones (rellenadas con "-" y costo 0
    cuando hay menos productos) y agrupa el resto en "otros".
    """
    dia = _como_dia(fecha)
    desde, hasta = _rango_mes(dia)
    por_producto = defaultdict(lambda: CERO)
    for m in _completados(placa, desde, hasta):
        for ajuste in m.repuestos_ajuste.all():
            por_producto[ajuste.producto or ajuste.codigo] += ajuste.precio * ajuste.cantidad

    ordenados = sorted(por_producto.items(), key=lambda kv: (-kv[1], kv[0]))
    primeros = [{"producto": p, "costo": c} for p, c in ordenados[:top]]
    primeros += [{"producto": "-", "costo": CERO}] * (top - len(primeros))
    return {
        "mes": _etiqueta(dia),
        "repuestos": primeros,
        "otros": sum((c for _, c in ordenados[top:]), CERO),
    }


def conteo_del_mes(placa: str | None, fecha) -> dict:
    desde, hasta = _rango_mes(_como_dia(fecha))
    qs = Mantenimiento.objects.filter(fecha__gte=desde, fecha__lt=hasta)
    if placa:
        qs = qs.filter(placa=normalizar_placa(placa))
    return {
        "completados": qs.filter(estado=EstadoMantenimiento.COMPLETADO).count(),
        "denegados": qs.filter(estado=EstadoMantenimiento.DENEGADO).count(),
    }


def repuestos_consumidos_por_mes(placa: str | None, fecha, meses: int = MESES_VENTANA,
                                 top: int = TOP_CONSUMIDOS) -> list[dict]:
    """
    Unidades consumidas por producto, mes a mes, en los ``meses`` que terminan en ``fecha``.

    Cada mes lista sus ``top`` productos de mayor cantidad y suma el resto
    en "otros". Los meses sin consumo quedan con la lista vacía.
    """
    ventana = _meses_ventana(fecha, meses)
    desde, _ = _rango_mes(ventana[0])
    _, hasta = _rango_mes(ventana[-1])
    grupos = _por_mes(_completados(placa, desde, hasta))
    filas = []
    for mes in ventana:
        cantidades = Counter()
        for m in grupos.get(mes, []):
            for ajuste in m.repuestos_ajuste.all():
                cantidades[ajuste.producto or ajuste.codigo] += ajuste.cantidad
        ordenados = sorted(cantidades.items(), key=lambda kv: (-kv[1], kv[0]))
        filas.append({
            "mes": _etiqueta(mes),
            "repuestos": [{"producto": p, "cantidad": c} for p, c in ordenados[:top]],
            "otros": sum(c for _, c in ordenados[top:]),
        })
    return filas


def _inicio_del_dia(dia):
    return timezone.make_aware(datetime.combine(dia, time.min))


def calendario_rango(fecha) -> list[dict]:
    """Mantenimientos programados por día, seis meses antes y después de ``fecha``."""
    dia = _como_dia(fecha)
    desde = _inicio_del_dia(dia - relativedelta(months=MESES_CALENDARIO))
    hasta = _inicio_del_dia(dia + relativedelta(months=MESES_CALENDARIO) + timedelta(days=1))
    fechas = (
        Mantenimiento.objects
        .filter(estado=EstadoMantenimiento.PROGRAMADO, fecha__gte=desde, fecha__lt=hasta)
        .values_list("fecha", flat=True)
    )
    conteo = Counter(timezone.localdate(f) for f in fechas)
    return [{"fecha": d, "cantidad": n} for d, n in sorted(conteo.items())]


def resumen_calendario_hoy(hoy=None) -> dict:
    """Programados de hoy frente a todos los de hoy que siguen en curso o se completaron."""
    hoy = hoy or timezone.localdate()
    desde = _inicio_del_dia(hoy)
    estados = Counter(
        Mantenimiento.objects
        .filter(fecha__gte=desde, fecha__lt=desde + timedelta(days=1))
        .values_list("estado", flat=True)
    )
    contados = (
        EstadoMantenimiento.PROGRAMADO,
        EstadoMantenimiento.PENDIENTE,
        EstadoMantenimiento.REVISION,
        EstadoMantenimiento.COMPLETADO,
    )
    return {
        "programados": estados[EstadoMantenimiento.PROGRAMADO],
        "total": sum(estados[e] for e in contados),
    }


def buscar_completados(desde=None, hasta=None, placa: str = None, pagina=1) -> dict:
    """
    Mantenimientos completados cuya fecha de fin cae en [desde, hasta], de seis en seis.

    Una fecha sin hora en ``hasta`` incluye el día completo. ``placa`` filtra
    por coincidencia parcial sin distinguir mayúsculas.
    """
    qs = Mantenimiento.objects.filter(estado=EstadoMantenimiento.COMPLETADO)
    if placa:
        qs = qs.filter(placa__icontains=placa.strip())
    if desde is not None:
        if not isinstance(desde, datetime):
            desde = _inicio_del_dia(desde)
        qs = qs.filter(fecha_fin__gte=desde)
    if hasta is not None:
        if isinstance(hasta, datetime):
            qs = qs.filter(fecha_fin__lte=hasta)
        else:
            qs = qs.filter(fecha_fin__lt=_inicio_del_dia(hasta + timedelta(days=1)))
    qs = qs.order_by("-fecha_fin", "-id").prefetch_related("repuestos_ajuste")

    paginator = Paginator(qs, POR_PAGINA)
    page = paginator.get_page(pagina)
    filas = []
    for m in page:
        ajustes = list(m.repuestos_ajuste.all())
        filas.append({
            "id": m.pk,
            "placa": m.placa,
            "tipo": m.tipo,
            "fecha_inicio": m.fecha_inicio,
            "fecha_fin": m.fecha_fin,
            "repuestos_usados": len(ajustes),
            "costo_repuestos": sum((a.precio * a.cantidad for a in ajustes), CERO),
        })
    return {"pagina": page.number, "total_paginas": paginator.num_pages, "mantenimientos": filas}


def operatividad_por_mes(placa: str, fecha) -> list[dict]:
    """Horas operativas por mes: horas del mes menos horas detenido en mantenimiento."""
    meses = _meses_ventana(fecha)
    desde, _ = _rango_mes(meses[0])
    _, hasta = _rango_mes(meses[-1])
    grupos = _por_mes(_completados(placa, desde, hasta))
    filas = []
    for mes in meses:
        inicio, fin = _rango_mes(mes)
        horas_mes = (fin - inicio).total_seconds() / 3600.0
        muertas = sum(m.horas_detenido() for m in grupos.get(mes, []))
        filas.append({"mes": _etiqueta(mes), "operatividad": round(horas_mes - muertas, 2)})
    return filas


def _operatividad(placa, ahora):
    completados = list(
        Mantenimiento.objects
        .filter(placa=normalizar_placa(placa), estado=EstadoMantenimiento.COMPLETADO,
                fecha_inicio__isnull=False)
        .order_by("fecha_inicio")
    )
    if not completados:
        logger.info(f"Sin mantenimientos completados para {placa}")
        return 0.0, 0.0
    ahora = ahora or timezone.now()
    totales = (ahora - completados[0].fecha_inicio).total_seconds() / 3600.0
    muertas = sum(m.horas_detenido() for m in completados)
    return totales, totales - muertas


def operatividad_horas(placa: str, ahora=None) -> float:
    _, operativas = _operatividad(placa, ahora)
    return round(operativas, 2)


def operatividad_porcentual(placa: str, ahora=None) -> float:
    """Fracción (0..1) del tiempo desde el primer mantenimiento completado en que el vehículo operó."""
    totales, operativas = _operatividad(placa, ahora)
    if totales <= 0:
        return 0.0
    return operativas / totales
