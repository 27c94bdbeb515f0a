# core/transacciones.py
from django.db import DEFAULT_DB_ALIAS, transaction


class UnidadDeTrabajo:
    """
    Ámbito transaccional explícito.

    Envuelve ``transaction.atomic`` y se pasa como argumento a toda
    operación que escribe registros o inventario. Al salir con excepción
    se deshace todo; los efectos posteriores se registran con
    ``al_confirmar`` y solo corren si el commit tuvo éxito.

        with UnidadDeTrabajo() as uow:
            verificar_y_reservar(uow, items)
            uow.al_confirmar(lambda: publicador.publicar(...))
    """

    def __init__(self, using=None):
        self.using = using or DEFAULT_DB_ALIAS
        self._atomic = None

    @property
    def activa(self) -> bool:
        return self._atomic is not None

    def __enter__(self):
        atomic = transaction.atomic(using=self.using)
        atomic.__enter__()
        self._atomic = atomic
        return self

    def __exit__(self, exc_type, exc, tb):
        atomic, self._atomic = self._atomic, None
        return atomic.__exit__(exc_type, exc, tb)

    def exigir_activa(self):
        if not self.activa:
            raise RuntimeError("La operación requiere una unidad de trabajo abierta.")

    def al_confirmar(self, funcion):
        self.exigir_activa()
        transaction.on_commit(funcion, using=self.using)
