# mantenimientos/resultados.py
from dataclasses import dataclass
from typing import Any, ClassVar

from core.errores import MantenimientoError


@dataclass(frozen=True)
class Ok:
    valor: Any
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    error: MantenimientoError
    ok: ClassVar[bool] = False

    @property
    def tipo(self) -> str:
        return self.error.codigo


Resultado = Ok | Err
