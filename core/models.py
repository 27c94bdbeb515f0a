from django.db import models

from .roles import Canal


class Notificacion(models.Model):
    canal = models.CharField(max_length=20, choices=Canal.choices)
    tipo = models.CharField(max_length=40)
    identificador = models.CharField(max_length=64, blank=True)  # id del objeto que la origina
    titulo = models.CharField(max_length=140)
    descripcion = models.TextField(blank=True)
    fecha = models.DateTimeField()
    leida = models.BooleanField(default=False)

    class Meta:
        ordering = ["-fecha"]
        indexes = [models.Index(fields=["canal", "leida", "fecha"])]

    def __str__(self):
        return f"{self.titulo} · {'leída' if self.leida else 'no leída'}"

    def como_payload(self):
        return {
            "id": self.pk,
            "canal": self.canal,
            "tipo": self.tipo,
            "identificador": self.identificador,
            "titulo": self.titulo,
            "descripcion": self.descripcion,
            "fecha": self.fecha.isoformat(),
            "leida": self.leida,
        }


class AuditLog(models.Model):
    app = models.CharField(max_length=40)
    action = models.CharField(max_length=40)       # CREATE/UPDATE
    object_repr = models.CharField(max_length=140, blank=True, default="")
    extra = models.TextField(blank=True, default="")
    ts = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-ts"]
        indexes = [models.Index(fields=["app", "action", "ts"])]

    def __str__(self):
        return f"[{self.ts:%Y-%m-%d %H:%M}] {self.app}:{self.action} · {self.object_repr or '-'}"
