from django.db import models
from django.core.exceptions import ValidationError
from django.db.models import Q


class Repuesto(models.Model):
    codigo = models.CharField(max_length=50, unique=True)
    marca = models.CharField(max_length=80, blank=True)
    producto = models.CharField(max_length=255)
    stock_disponible = models.PositiveIntegerField(default=0)
    stock_reservado = models.PositiveIntegerField(default=0)
    stock_consumido = models.PositiveIntegerField(default=0)
    stock_minimo = models.PositiveIntegerField(default=0)
    activo = models.BooleanField(default=True)

    class Meta:
        ordering = ["codigo"]
        constraints = [
            models.CheckConstraint(condition=Q(stock_disponible__gte=0), name="repuesto_disponible_no_negativo"),
            models.CheckConstraint(condition=Q(stock_reservado__gte=0), name="repuesto_reservado_no_negativo"),
            models.CheckConstraint(condition=Q(stock_consumido__gte=0), name="repuesto_consumido_no_negativo"),
        ]

    def __str__(self):
        return f"{self.codigo} · {self.producto}"

    @property
    def stock_total(self):
        """Todo lo ingresado alguna vez: disponible + reservado + consumido."""
        return self.stock_disponible + self.stock_reservado + self.stock_consumido

    @property
    def en_minimo(self):
        return self.stock_disponible <= self.stock_minimo


class MovimientoStock(models.Model):
    ENTRADA = "ENTRADA"
    RESERVA = "RESERVA"
    LIBERACION = "LIBERACION"
    CONSUMO = "CONSUMO"
    TIPO_CHOICES = [
        (ENTRADA, "Entrada"),
        (RESERVA, "Reserva"),
        (LIBERACION, "Liberación"),
        (CONSUMO, "Consumo"),
    ]

    repuesto = models.ForeignKey(Repuesto, on_delete=models.PROTECT, related_name="movimientos")
    tipo = models.CharField(max_length=10, choices=TIPO_CHOICES)
    cantidad = models.PositiveIntegerField()
    motivo = models.CharField(max_length=255, blank=True, default="")
    # Reservas, liberaciones y consumos apuntan al mantenimiento que los origina
    mantenimiento = models.ForeignKey(
        "mantenimientos.Mantenimiento", on_delete=models.SET_NULL,
        null=True, blank=True, related_name="movimientos_repuesto",
    )
    creado_en = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-creado_en"]
        indexes = [models.Index(fields=["repuesto", "tipo"])]

    def clean(self):
        if self.cantidad is None:
            raise ValidationError("La cantidad es obligatoria.")
        if self.tipo == self.ENTRADA and self.mantenimiento_id:
            raise ValidationError("Las entradas no se asocian a un mantenimiento.")
