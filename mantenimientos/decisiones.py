# mantenimientos/decisiones.py
"""Resultado de la revisión del administrador: exactamente una de tres variantes."""

from dataclasses import dataclass, field

from inventario.items import ItemRepuesto


@dataclass(frozen=True)
class Denegar:
    cambios_solicitados: str = ""


@dataclass(frozen=True)
class SolicitarRevision:
    cambios_solicitados: str = ""


@dataclass(frozen=True)
class Aprobar:
    ajustes: tuple[ItemRepuesto, ...] = field(default_factory=tuple)


Decision = Denegar | SolicitarRevision | Aprobar
