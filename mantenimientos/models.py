from decimal import Decimal

from django.db import models

from inventario.items import ItemRepuesto


class EstadoMantenimiento(models.TextChoices):
    PROGRAMADO = "programado", "Programado"
    PENDIENTE = "pendiente", "Pendiente"
    REVISION = "revision", "Revisión"
    APROBADO = "aprobado", "Aprobado"
    DENEGADO = "denegado", "Denegado"
    COMPLETADO = "completado", "Completado"
    EXPIRADO = "expirado", "Expirado"


ESTADOS_TERMINALES = frozenset({
    EstadoMantenimiento.DENEGADO,
    EstadoMantenimiento.COMPLETADO,
    EstadoMantenimiento.EXPIRADO,
})


class TipoMantenimiento(models.TextChoices):
    PREVENTIVO = "preventivo", "Mantenimiento Preventivo"
    CORRECTIVO = "correctivo", "Mantenimiento Correctivo"


class Mantenimiento(models.Model):
    placa = models.CharField(max_length=12)
    tipo = models.CharField(max_length=12, choices=TipoMantenimiento.choices)
    fecha = models.DateTimeField()  # fecha programada
    fecha_inicio = models.DateTimeField(null=True, blank=True)
    fecha_fin = models.DateTimeField(null=True, blank=True)
    estado = models.CharField(
        max_length=12, choices=EstadoMantenimiento.choices, default=EstadoMantenimiento.PROGRAMADO
    )
    diagnostico_final = models.TextField(blank=True)
    cambios_solicitados = models.TextField(blank=True)
    km_medido = models.PositiveIntegerField(null=True, blank=True)
    km_previo = models.PositiveIntegerField(null=True, blank=True)
    creado_en = models.DateTimeField(auto_now_add=True)
    actualizado_en = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["fecha"]
        indexes = [
            models.Index(fields=["estado", "fecha"]),
            models.Index(fields=["placa", "estado"]),
        ]

    def __str__(self):
        return f"Mantenimiento #{self.pk} · {self.placa} · {self.get_estado_display()}"

    @property
    def es_terminal(self):
        return self.estado in ESTADOS_TERMINALES

    def items_solicitados(self) -> list[ItemRepuesto]:
        return [r.como_item() for r in self.repuestos.order_by("codigo")]

    def items_ajuste(self) -> list[ItemRepuesto]:
        return [r.como_item() for r in self.repuestos_ajuste.order_by("codigo")]

    @property
    def costo_total(self) -> Decimal:
        return sum((i.costo for i in self.items_ajuste()), Decimal("0"))

    @property
    def km_recorrido(self) -> int:
        if self.km_medido is None or self.km_previo is None:
            return 0
        return self.km_medido - self.km_previo

    def horas_detenido(self) -> float:
        """Horas entre inicio y fin de la ejecución; 0 si falta alguna marca."""
        if not self.fecha_inicio or not self.fecha_fin:
            return 0.0
        return max(0.0, (self.fecha_fin - self.fecha_inicio).total_seconds() / 3600.0)


class RepuestoSolicitado(models.Model):
    mantenimiento = models.ForeignKey(Mantenimiento, on_delete=models.CASCADE, related_name="repuestos")
    codigo = models.CharField(max_length=50)
    marca = models.CharField(max_length=80, blank=True)
    producto = models.CharField(max_length=255, blank=True)
    cantidad = models.PositiveIntegerField()

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["mantenimiento", "codigo"], name="uq_repuesto_solicitado"),
        ]

    def como_item(self):
        return ItemRepuesto(self.codigo, self.cantidad, self.marca, self.producto)


class RepuestoAjuste(models.Model):
    mantenimiento = models.ForeignKey(Mantenimiento, on_delete=models.CASCADE, related_name="repuestos_ajuste")
    codigo = models.CharField(max_length=50)
    marca = models.CharField(max_length=80, blank=True)
    producto = models.CharField(max_length=255, blank=True)
    cantidad = models.PositiveIntegerField()
    precio = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["mantenimiento", "codigo"], name="uq_repuesto_ajuste"),
        ]

    def como_item(self):
        return ItemRepuesto(self.codigo, self.cantidad, self.marca, self.producto, self.precio)


class HistorialEstado(models.Model):
    mantenimiento = models.ForeignKey(Mantenimiento, on_delete=models.CASCADE, related_name="historial")
    estado = models.CharField(max_length=12, choices=EstadoMantenimiento.choices)
    inicio = models.DateTimeField(auto_now_add=True)
    fin = models.DateTimeField(null=True, blank=True)
    observaciones = models.TextField(blank=True)

    class Meta:
        ordering = ["inicio", "id"]
        indexes = [models.Index(fields=["mantenimiento", "estado", "inicio"])]
        verbose_name = "Historial de estado"
        verbose_name_plural = "Historial de estados"
