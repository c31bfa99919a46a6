"""Supplier name normalization."""
from typing import Optional

# Substring -> canonical name. First match wins.
SUPPLIER_ALIASES = [
    (("INSTITUTO DOS REGISTOS", "NOTARIADO", "REGISTO PREDIAL"), "IRN"),
    (("PETRÓLEOS DE PORTUGAL", "GALP ENERGIA"), "GALP"),
    (("NOS COMUNICAÇÕES", "NOS SGPS"), "NOS"),
]


def normalize_supplier_name(name: Optional[str]) -> Optional[str]:
    """Upper-case, trim and collapse known aliases (e.g. GALP ENERGIA -> GALP)."""
    if not name:
        return None
    upper = name.upper().strip()
    for needles, canonical in SUPPLIER_ALIASES:
        if any(needle in upper for needle in needles):
            return canonical
    return upper
