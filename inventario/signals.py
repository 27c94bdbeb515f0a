# inventario/signals.py
import json
from django.db.models.signals import post_save
from django.dispatch import receiver

from core.models import AuditLog
from .models import MovimientoStock


def _mov_repr(m: MovimientoStock):
    cod = getattr(getattr(m, "repuesto", None), "codigo", "") or ""
    tipo = m.get_tipo_display()
    return f"MOV #{m.pk} · {cod} · {tipo}".strip(" ·")


@receiver(post_save, sender=MovimientoStock, dispatch_uid="inv_mov_post_save", weak=False)
def mov_saved(sender, instance: MovimientoStock, created, **kwargs):
    extra = {
        "repuesto": getattr(getattr(instance, "repuesto", None), "codigo", ""),
        "tipo": instance.get_tipo_display(),
        "cantidad": instance.cantidad,
        "motivo": instance.motivo or "",
        "mantenimiento": instance.mantenimiento_id,
    }
    AuditLog.objects.create(
        app="INV",
        action=("CREATE" if created else "UPDATE"),
        object_repr=_mov_repr(instance),
        extra=json.dumps(extra, ensure_ascii=False),
    )
