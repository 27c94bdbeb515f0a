from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from mantenimientos.services import MotorMantenimientos


class Command(BaseCommand):
    help = (
        "Expira los mantenimientos no terminales con fecha programada más antigua que el umbral. "
        "Ej: python manage.py expirar_mantenimientos --dias 10"
    )

    def add_arguments(self, parser):
        parser.add_argument("--dias", type=int, default=None,
                            help="Umbral en días (por defecto MANTENIMIENTO_DIAS_EXPIRACION).")

    def handle(self, *args, **opts):
        dias = opts["dias"] if opts["dias"] is not None else settings.MANTENIMIENTO_DIAS_EXPIRACION
        if dias < 0:
            raise CommandError("El umbral de días no puede ser negativo")
        resultados = MotorMantenimientos().expirar_vencidos(dias=dias)
        for r in resultados:
            if not r.ok:
                self.stderr.write(f"[{r.tipo}] {r.error.mensaje}")
        expirados = sum(r.ok for r in resultados)
        self.stdout.write(self.style.SUCCESS(f"{expirados} mantenimientos expirados (umbral {dias} días)"))
