# mantenimientos/signals.py
import json
from django.db.models.signals import post_save
from django.dispatch import receiver

from core.models import AuditLog
from .models import Mantenimiento


def _mant_repr(m: Mantenimiento):
    return f"MANT #{m.pk} · {m.placa}".strip(" ·")


@receiver(post_save, sender=Mantenimiento, dispatch_uid="mant_post_save", weak=False)
def mant_saved(sender, instance: Mantenimiento, created, **kwargs):
    extra = {
        "estado": instance.estado,
        "estado_label": instance.get_estado_display(),
        "tipo": instance.tipo,
        "fecha": instance.fecha.isoformat() if instance.fecha else None,
        "fecha_inicio": instance.fecha_inicio.isoformat() if instance.fecha_inicio else None,
        "fecha_fin": instance.fecha_fin.isoformat() if instance.fecha_fin else None,
        "km_medido": instance.km_medido,
    }
    AuditLog.objects.create(
        app="MANT",
        action=("CREATE" if created else "UPDATE"),
        object_repr=_mant_repr(instance),
        extra=json.dumps(extra, ensure_ascii=False),
    )
