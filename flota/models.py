from django.db import models


class Vehiculo(models.Model):
    placa = models.CharField(max_length=12, unique=True)
    cliente = models.CharField(max_length=120, blank=True)
    propietario = models.CharField(max_length=120, blank=True)
    marca = models.CharField(max_length=80, blank=True)
    modelo = models.CharField(max_length=80, blank=True)
    fecha_soat = models.DateField(null=True, blank=True)
    km_registro_inicial = models.PositiveIntegerField(default=0)
    km_actual = models.PositiveIntegerField(default=0)

    class Meta:
        indexes = [models.Index(fields=["placa"]), models.Index(fields=["cliente"])]
        verbose_name = "Vehículo"
        verbose_name_plural = "Vehículos"

    def __str__(self):
        return self.placa.upper()

    def save(self, *args, **kwargs):
        self.placa = (self.placa or "").strip().upper()
        super().save(*args, **kwargs)
