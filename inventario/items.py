# inventario/items.py
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from core.errores import ValidacionError


@dataclass(frozen=True)
class ItemRepuesto:
    """Línea de repuesto: la misma forma para solicitud, reserva, ajuste y consumo."""
    id: str
    cantidad: int
    marca: str = ""
    producto: str = ""
    precio: Decimal | None = None

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise ValidacionError("Cada repuesto requiere un identificador.")
        if isinstance(self.cantidad, bool) or not isinstance(self.cantidad, int) or self.cantidad < 0:
            raise ValidacionError(f"Cantidad inválida para {self.id}: {self.cantidad!r}", repuesto=self.id)
        if self.precio is not None and self.precio < 0:
            raise ValidacionError(f"Precio negativo para {self.id}", repuesto=self.id)

    @property
    def costo(self) -> Decimal:
        return (self.precio or Decimal("0")) * self.cantidad

    def con_cantidad(self, cantidad: int) -> "ItemRepuesto":
        return ItemRepuesto(self.id, cantidad, self.marca, self.producto, self.precio)

    @classmethod
    def desde_dict(cls, datos: dict) -> "ItemRepuesto":
        try:
            cantidad = Decimal(str(datos["cantidad"]).strip())
            if not cantidad.is_finite() or cantidad != cantidad.to_integral_value():
                raise ValidacionError(f"Cantidad no entera para {datos.get('id')}: {datos['cantidad']!r}")
            cantidad = int(cantidad)
            precio = datos.get("precio")
            precio = Decimal(str(precio)) if precio is not None else None
        except KeyError as e:
            raise ValidacionError(f"Falta el campo {e.args[0]} en el repuesto.")
        except (TypeError, ValueError, InvalidOperation):
            raise ValidacionError(f"Repuesto mal formado: {datos!r}")
        return cls(
            id=str(datos.get("id") or "").strip(),
            cantidad=cantidad,
            marca=datos.get("marca") or "",
            producto=datos.get("producto") or "",
            precio=precio,
        )


def normalizar_items(items, permitir_vacio: bool = False) -> list[ItemRepuesto]:
    """Acepta ItemRepuesto o dicts. Cada línea pide al menos una unidad y los ids no se repiten."""
    if items is None:
        items = []
    normalizados = [i if isinstance(i, ItemRepuesto) else ItemRepuesto.desde_dict(i) for i in items]
    if not normalizados and not permitir_vacio:
        raise ValidacionError("La matriz de repuestos está vacía")
    sin_cantidad = [i.id for i in normalizados if i.cantidad < 1]
    if sin_cantidad:
        raise ValidacionError("Cada repuesto debe pedir al menos una unidad", repuestos=sin_cantidad)
    ids = [i.id for i in normalizados]
    if len(ids) != len(set(ids)):
        repetidos = sorted({i for i in ids if ids.count(i) > 1})
        raise ValidacionError("La matriz de repuestos contiene duplicados", repetidos=repetidos)
    return normalizados
