# core/bus.py
"""
Bus de mensajes con tópicos nombrados.

La entrega es push, a lo más una vez por suscriptor conectado, sin
acuse ni historial: quien se suscribe después de una publicación no la
recibe.
"""

import json
import logging
from typing import Any, Callable

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.core.serializers.json import DjangoJSONEncoder
from django.dispatch import Signal

logger = logging.getLogger(__name__)


class BusEventos:
    """Contrato que usan el motor y el publicador."""

    def publicar(self, topico: str, payload: Any) -> None:
        raise NotImplementedError

    def suscribir(self, topico: str, receptor: Callable[[Any], None]) -> Callable[[], None]:
        """Conecta ``receptor`` al tópico. Devuelve una función para desconectarlo."""
        raise NotImplementedError


class BusSenales(BusEventos):
    """Bus en proceso sobre django.dispatch."""

    def __init__(self):
        self._senal = Signal()

    def publicar(self, topico, payload):
        respuestas = self._senal.send_robust(sender=self.__class__, topico=topico, payload=payload)
        for receptor, resultado in respuestas:
            if isinstance(resultado, Exception):
                logger.error(
                    f"Suscriptor de '{topico}' falló: {resultado!r}",
                    exc_info=(type(resultado), resultado, resultado.__traceback__),
                )

    def suscribir(self, topico, receptor):
        suscrito = topico

        def _entregar(sender, topico, payload, **kwargs):
            if topico == suscrito:
                receptor(payload)

        self._senal.connect(_entregar, weak=False)
        return lambda: self._senal.disconnect(_entregar)


class BusRedis(BusEventos):
    """Pub/sub de Redis; los payloads viajan como JSON."""

    def __init__(self, url: str = None, cliente=None):
        if cliente is None:
            import redis
            cliente = redis.from_url(url or settings.REDIS_URL)
        self._cliente = cliente

    def publicar(self, topico, payload):
        self._cliente.publish(topico, json.dumps(payload, cls=DjangoJSONEncoder))

    def suscribir(self, topico, receptor):
        pubsub = self._cliente.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{topico: lambda mensaje: receptor(json.loads(mensaje["data"]))})
        hilo = pubsub.run_in_thread(sleep_time=0.05, daemon=True)

        def cancelar():
            hilo.stop()
            pubsub.close()

        return cancelar


def construir_bus(backend: str = None) -> BusEventos:
    backend = backend or getattr(settings, "EVENT_BACKEND", "memory")
    if backend == "memory":
        return BusSenales()
    if backend == "redis":
        return BusRedis()
    raise ImproperlyConfigured(f"EVENT_BACKEND desconocido: {backend}")
