from datetime import datetime

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from flota.models import Vehiculo
from flota.registro import normalizar_placa
from reportes.exportar import exportar_estadisticas, pdf_estadisticas


class Command(BaseCommand):
    help = "Exporta las estadísticas de un vehículo. Ej: python manage.py exportar_estadisticas ABC-123 --fecha 2024-05-31 --formato pdf"

    def add_arguments(self, parser):
        parser.add_argument("placa")
        parser.add_argument("--fecha", help="Mes de referencia (YYYY-MM-DD). Por defecto hoy.")
        parser.add_argument("--formato", choices=["xlsx", "pdf"], default="xlsx")
        parser.add_argument("--salida", help="Ruta del archivo. Por defecto estadisticas_<placa>_<fecha>.<formato>")

    def handle(self, *args, **opts):
        placa = normalizar_placa(opts["placa"])
        if not Vehiculo.objects.filter(placa=placa).exists():
            raise CommandError(f"Vehículo {placa} no existe")
        if opts["fecha"]:
            try:
                fecha = datetime.strptime(opts["fecha"], "%Y-%m-%d").date()
            except ValueError:
                raise CommandError("Fecha inválida, use YYYY-MM-DD")
        else:
            fecha = timezone.localdate()
        salida = opts["salida"] or f"estadisticas_{placa}_{fecha:%Y%m%d}.{opts['formato']}"
        if opts["formato"] == "pdf":
            pdf_estadisticas(placa, fecha, salida)
        else:
            exportar_estadisticas(placa, fecha, salida)
        self.stdout.write(self.style.SUCCESS(f"Estadísticas exportadas a {salida}"))
